import time
from dataclasses import dataclass
from typing import Dict, Optional

from src.services.settings_service import SettingsService
from src.shared.utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CachedToken:
    """Bearer token with its absolute expiry (epoch milliseconds)"""

    value: str
    expires_at_ms: int
    mode: Optional[str] = None

    def is_valid(self, now_ms: Optional[int] = None) -> bool:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        return bool(self.value) and self.expires_at_ms > now_ms


class TokenCache:
    """
    Gateway bearer tokens persisted in the settings store.

    Stored as ``{gateway}Token`` / ``{gateway}TokenExpiry`` so tokens survive
    restarts, plus ``{gateway}TokenMode`` naming the endpoint family that
    issued the token. Concurrent refreshers simply overwrite each other (last
    writer wins); an in-process memo sits in front of the store.
    """

    def __init__(self, settings_service: Optional[SettingsService] = None):
        self._settings = settings_service or SettingsService()
        self._memo: Dict[str, CachedToken] = {}

    @staticmethod
    def _keys(gateway: str) -> tuple:
        prefix = gateway.lower()
        return f"{prefix}Token", f"{prefix}TokenExpiry", f"{prefix}TokenMode"

    async def get(self, gateway: str) -> Optional[CachedToken]:
        memo = self._memo.get(gateway)
        if memo and memo.is_valid():
            return memo

        token_key, expiry_key, mode_key = self._keys(gateway)
        values = await self._settings.get_settings([token_key, expiry_key, mode_key])
        token = values.get(token_key)
        expiry = values.get(expiry_key)
        if not token or not expiry:
            return None

        try:
            cached = CachedToken(
                value=token, expires_at_ms=int(expiry), mode=values.get(mode_key) or None
            )
        except ValueError:
            logger.warning(f"Ignoring unreadable token expiry for {gateway}: {expiry!r}")
            return None

        if not cached.is_valid():
            return None

        self._memo[gateway] = cached
        return cached

    async def put(
        self, gateway: str, token: str, expires_at_ms: int, mode: Optional[str] = None
    ) -> CachedToken:
        token_key, expiry_key, mode_key = self._keys(gateway)
        await self._settings.upsert(token_key, token)
        await self._settings.upsert(expiry_key, str(expires_at_ms))
        if mode:
            await self._settings.upsert(mode_key, mode)

        cached = CachedToken(value=token, expires_at_ms=expires_at_ms, mode=mode)
        self._memo[gateway] = cached
        return cached

    def clear(self, gateway: Optional[str] = None) -> None:
        if gateway is None:
            self._memo.clear()
        else:
            self._memo.pop(gateway, None)
