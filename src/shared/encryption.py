"""
AES-256-GCM encryption for credentials stored at rest.

Envelope format: ``iv:authTag:ciphertext`` with each part hex encoded.
"""

import os
import re
import time
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.api.payments.exceptions import ConfigurationError, DecryptionError
from src.config.settings import settings
from src.shared.utils import get_logger

logger = get_logger(__name__)

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
KEY_HEX_LENGTH = 64

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


class EncryptionService:
    """Authenticated encryption for settings values"""

    algorithm = "aes-256-gcm"

    def __init__(self, key_hex: Optional[str] = None):
        self._key_hex = key_hex
        self._key: Optional[bytes] = None

    def _get_key(self) -> bytes:
        if self._key is not None:
            return self._key

        key_hex = self._key_hex if self._key_hex is not None else settings.ENCRYPTION_KEY
        self._key = self.parse_key(key_hex)
        logger.info("Encryption service initialized")
        return self._key

    @staticmethod
    def parse_key(key_hex: Optional[str]) -> bytes:
        """Validate a 64-character hex key and return its 32 raw bytes."""
        if not key_hex:
            raise ConfigurationError(
                "ENCRYPTION_KEY is not set", missing_fields=["ENCRYPTION_KEY"]
            )
        if len(key_hex) != KEY_HEX_LENGTH:
            raise ConfigurationError(
                "ENCRYPTION_KEY must be exactly 64 hexadecimal characters (32 bytes)",
                missing_fields=["ENCRYPTION_KEY"],
            )
        if not _HEX_RE.match(key_hex):
            raise ConfigurationError(
                "ENCRYPTION_KEY must contain only hexadecimal characters (0-9, a-f, A-F)",
                missing_fields=["ENCRYPTION_KEY"],
            )
        return bytes.fromhex(key_hex)

    def encrypt(self, plain_text: str) -> str:
        """
        Encrypt a string value.

        Args:
            plain_text: Non-empty text to encrypt

        Returns:
            str: ``iv:authTag:ciphertext`` (hex); a fresh IV is used on every call
        """
        if plain_text is None or plain_text.strip() == "":
            raise ValueError("Cannot encrypt empty string")

        key = self._get_key()
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(key).encrypt(iv, plain_text.encode("utf-8"), None)
        ciphertext, auth_tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]

        return f"{iv.hex()}:{auth_tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted_text: str) -> str:
        """
        Decrypt an ``iv:authTag:ciphertext`` envelope.

        Raises:
            DecryptionError: malformed envelope or authentication tag mismatch
        """
        if not encrypted_text or encrypted_text.strip() == "":
            raise DecryptionError("Cannot decrypt empty string")

        key = self._get_key()

        parts = encrypted_text.split(":")
        if len(parts) != 3:
            raise DecryptionError(
                "Invalid encrypted format. Expected format: iv:authTag:encryptedData"
            )

        try:
            iv = bytes.fromhex(parts[0])
            auth_tag = bytes.fromhex(parts[1])
            ciphertext = bytes.fromhex(parts[2])
        except ValueError as e:
            raise DecryptionError("Encrypted value is not valid hex", e)

        if len(iv) != IV_LENGTH:
            raise DecryptionError("Invalid IV length")
        if len(auth_tag) != AUTH_TAG_LENGTH:
            raise DecryptionError("Invalid auth tag length")

        try:
            plain = AESGCM(key).decrypt(iv, ciphertext + auth_tag, None)
        except InvalidTag as e:
            logger.error("Decryption failed: authentication tag mismatch")
            raise DecryptionError("Decryption failed: authentication tag mismatch", e)

        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted value is not valid UTF-8", e)

    def is_encrypted(self, value: Any) -> bool:
        """
        Format heuristic: three colon-separated, all-hex parts.
        Plaintext that happens to look like hex triples is misclassified.
        """
        if not value or not isinstance(value, str):
            return False

        parts = value.split(":")
        if len(parts) != 3:
            return False

        return all(_HEX_RE.match(part) for part in parts)

    @staticmethod
    def generate_key() -> str:
        """A new 64-character hex string suitable for ENCRYPTION_KEY"""
        return os.urandom(32).hex()

    def test_encryption(self) -> bool:
        """Round-trip self check used before migrating stored credentials."""
        try:
            test_data = f"Test encryption data: {int(time.time() * 1000)}"
            if self.decrypt(self.encrypt(test_data)) != test_data:
                logger.error("Encryption test failed: data mismatch")
                return False
        except (ConfigurationError, DecryptionError) as e:
            logger.error(f"Encryption test failed: {e}")
            return False

        logger.info("Encryption test passed")
        return True

    def get_status(self) -> Dict[str, Any]:
        try:
            self._get_key()
            initialized = True
        except ConfigurationError:
            initialized = False
        return {"initialized": initialized, "algorithm": self.algorithm}


encryption_service = EncryptionService()
