from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.config.constants import SENSITIVE_SETTING_KEYS, SettingGroup
from src.database.connection import AsyncSessionLocal
from src.database.models.system_setting import SystemSetting
from src.shared.encryption import EncryptionService, encryption_service
from src.shared.error_handler import ErrorHandler, handle_service_errors


def setting_group_for(key: str) -> str:
    """Group a settings key by its integration prefix."""
    if key.startswith("bkash"):
        return SettingGroup.BKASH.value
    if key.startswith("nagad"):
        return SettingGroup.NAGAD.value
    if key.startswith("smtp"):
        return SettingGroup.MAIL.value
    return SettingGroup.GENERAL.value


class SettingsService:
    """
    Key/value settings store.

    Values flagged as encrypted (or that look like an encryption envelope)
    are decrypted on read. Anything else is returned as legacy plaintext.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        encryption: Optional[EncryptionService] = None,
    ):
        self._error_handler = ErrorHandler(__name__)
        self._session_factory = session_factory or AsyncSessionLocal
        self._encryption = encryption or encryption_service

    async def get_settings(self, keys: Iterable[str]) -> Dict[str, str]:
        """Fetch and decrypt the requested keys. Missing keys are simply absent."""
        keys = list(keys)
        async with self._session_factory() as session:
            result = await session.execute(
                select(SystemSetting).filter(SystemSetting.setting_key.in_(keys))
            )
            rows = result.scalars().all()

        return {row.setting_key: self._read_value(row) for row in rows}

    async def get_setting(self, key: str, default: str = "") -> str:
        values = await self.get_settings([key])
        value = values.get(key)
        return value if value is not None else default

    def _read_value(self, row: SystemSetting) -> str:
        value = row.setting_value or ""
        if not value:
            return value

        if row.encrypted or self._encryption.is_encrypted(value):
            return self._encryption.decrypt(value)

        if row.setting_key in SENSITIVE_SETTING_KEYS:
            self._error_handler.logger.warning(
                f"Setting '{row.setting_key}' is stored as plaintext; run scripts/encrypt_credentials.py"
            )
        return value

    @handle_service_errors("saving setting")
    async def upsert(
        self,
        key: str,
        value: str,
        group: Optional[str] = None,
        encrypt: bool = False,
    ) -> None:
        """Insert or update one setting, encrypting the value when asked."""
        stored_value = self._encryption.encrypt(value) if encrypt and value else value
        group = group or setting_group_for(key)

        async with self._session_factory() as session:
            result = await session.execute(
                select(SystemSetting).filter(SystemSetting.setting_key == key)
            )
            setting = result.scalars().first()

            if setting:
                setting.setting_value = stored_value
                setting.encrypted = bool(encrypt and value)
            else:
                session.add(
                    SystemSetting(
                        setting_key=key,
                        setting_value=stored_value,
                        setting_group=group,
                        encrypted=bool(encrypt and value),
                    )
                )
            await session.commit()

    @handle_service_errors("encrypting settings")
    async def encrypt_existing(self, keys: Iterable[str] = SENSITIVE_SETTING_KEYS) -> Dict[str, List[str]]:
        """
        Encrypt plaintext values in place.

        Returns:
            Dict with the keys that were encrypted, skipped and failed
        """
        report: Dict[str, List[str]] = {"encrypted": [], "skipped": [], "failed": []}

        async with self._session_factory() as session:
            result = await session.execute(
                select(SystemSetting).filter(SystemSetting.setting_key.in_(list(keys)))
            )
            for setting in result.scalars().all():
                if not setting.setting_value or self._encryption.is_encrypted(setting.setting_value):
                    if setting.setting_value and not setting.encrypted:
                        setting.encrypted = True
                    report["skipped"].append(setting.setting_key)
                    continue

                try:
                    setting.setting_value = self._encryption.encrypt(setting.setting_value)
                    setting.encrypted = True
                    report["encrypted"].append(setting.setting_key)
                except ValueError as e:
                    self._error_handler.logger.error(
                        f"Failed to encrypt setting '{setting.setting_key}': {e}"
                    )
                    report["failed"].append(setting.setting_key)

            await session.commit()

        return report
