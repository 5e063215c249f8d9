"""
Gateway credential resolution.

Per-gateway settings rows win over process environment fallbacks. Bundles are
built per call and never cached.
"""

from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Union

from src.api.payments.exceptions import ConfigurationError
from src.config.constants import (
    BKASH_BASE_URLS,
    BKASH_SETTING_KEYS,
    NAGAD_BASE_URLS,
    NAGAD_SETTING_KEYS,
    BkashMode,
    Gateway,
    RunMode,
)
from src.config.settings import settings
from src.services.settings_service import SettingsService
from src.shared.error_handler import ErrorHandler


@dataclass(frozen=True)
class BkashCredentials:
    app_key: str
    app_secret: str
    username: str
    password: str
    run_mode: RunMode
    mode: BkashMode
    base_url: str

    @property
    def is_tokenized(self) -> bool:
        return self.mode == BkashMode.TOKENIZED

    def for_mode(self, mode: BkashMode) -> "BkashCredentials":
        """Same credentials pointed at the other integration mode's endpoint."""
        return replace(self, mode=mode, base_url=BKASH_BASE_URLS[(self.run_mode, mode)])

    def __repr__(self) -> str:
        return (
            f"BkashCredentials(username={self.username!r}, run_mode={self.run_mode.value}, "
            f"mode={self.mode.value}, base_url={self.base_url!r})"
        )


@dataclass(frozen=True)
class NagadCredentials:
    merchant_id: str
    public_key: str
    private_key: str
    run_mode: RunMode
    base_url: str

    def __repr__(self) -> str:
        return (
            f"NagadCredentials(merchant_id={self.merchant_id!r}, "
            f"run_mode={self.run_mode.value}, base_url={self.base_url!r})"
        )


CredentialBundle = Union[BkashCredentials, NagadCredentials]


def parse_run_mode(value: Optional[str]) -> RunMode:
    return RunMode.PRODUCTION if (value or "").strip().lower() == RunMode.PRODUCTION.value else RunMode.SANDBOX


def infer_bkash_mode(username: str, run_mode: RunMode) -> BkashMode:
    """
    Best-effort guess of the bKash integration mode.

    Production merchants are tokenized unless the username says "standard";
    sandbox accounts are standard unless the username says "tokenized".
    BkashProvider.get_token corrects a wrong guess by retrying the other mode.
    """
    lowered = (username or "").lower()
    if run_mode == RunMode.PRODUCTION:
        return BkashMode.STANDARD if "standard" in lowered else BkashMode.TOKENIZED
    return BkashMode.TOKENIZED if "tokenized" in lowered else BkashMode.STANDARD


class CredentialStore:
    """Resolves credential bundles for a gateway"""

    def __init__(self, settings_service: Optional[SettingsService] = None):
        self._error_handler = ErrorHandler(__name__)
        self._settings = settings_service or SettingsService()

    async def resolve(self, gateway: Gateway) -> CredentialBundle:
        if gateway == Gateway.BKASH:
            return await self.resolve_bkash()
        if gateway == Gateway.NAGAD:
            return await self.resolve_nagad()
        raise ConfigurationError(f"Unknown payment gateway: {gateway}")

    async def resolve_bkash(self) -> BkashCredentials:
        stored = await self._settings.get_settings(BKASH_SETTING_KEYS)

        values = {
            "bkashAppKey": stored.get("bkashAppKey") or settings.BKASH_APP_KEY,
            "bkashAppSecret": stored.get("bkashAppSecret") or settings.BKASH_APP_SECRET,
            "bkashUsername": stored.get("bkashUsername") or settings.BKASH_USERNAME,
            "bkashPassword": stored.get("bkashPassword") or settings.BKASH_PASSWORD,
        }
        self._require(Gateway.BKASH, values)

        run_mode = parse_run_mode(stored.get("bkashRunMode") or settings.BKASH_RUN_MODE)
        mode = infer_bkash_mode(values["bkashUsername"], run_mode)
        base_url = BKASH_BASE_URLS[(run_mode, mode)]

        self._error_handler.logger.info(
            f"bKash config: RunMode={run_mode.value}, Type={mode.value}, BaseURL={base_url}"
        )

        return BkashCredentials(
            app_key=values["bkashAppKey"],
            app_secret=values["bkashAppSecret"],
            username=values["bkashUsername"],
            password=values["bkashPassword"],
            run_mode=run_mode,
            mode=mode,
            base_url=base_url,
        )

    async def resolve_nagad(self) -> NagadCredentials:
        stored = await self._settings.get_settings(NAGAD_SETTING_KEYS)

        values = {
            "nagadMerchantId": stored.get("nagadMerchantId") or settings.NAGAD_MERCHANT_ID,
            "nagadPublicKey": stored.get("nagadPublicKey") or settings.NAGAD_PUBLIC_KEY,
            "nagadPrivateKey": stored.get("nagadPrivateKey") or settings.NAGAD_MERCHANT_PRIVATE_KEY,
        }
        self._require(Gateway.NAGAD, values)

        run_mode = parse_run_mode(stored.get("nagadRunMode") or settings.NAGAD_RUN_MODE)

        return NagadCredentials(
            merchant_id=values["nagadMerchantId"],
            public_key=values["nagadPublicKey"],
            private_key=values["nagadPrivateKey"],
            run_mode=run_mode,
            base_url=NAGAD_BASE_URLS[run_mode],
        )

    def _require(self, gateway: Gateway, values: Dict[str, str]) -> None:
        missing: List[str] = [key for key, value in values.items() if not value]
        if missing:
            message = f"{gateway.value} credentials are not fully configured. Missing: {', '.join(missing)}"
            self._error_handler.logger.error(message)
            raise ConfigurationError(message, missing_fields=missing, gateway=gateway.value)
