"""Storage helpers shared between the memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from playerdash.logging import get_logger

logger = get_logger(__name__)


class SecretCipher:
    """Fernet wrapper for TOTP secrets at rest.

    The Fernet key is derived from arbitrary key material with SHA-256 so
    operators can supply any sufficiently long string.
    """

    def __init__(self, key_material: str | None) -> None:
        if not key_material:
            raise RuntimeError("TOTP encryption key material is required")
        self._fernet = Fernet(self.derive_key(key_material))

    @staticmethod
    def derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            logger.error("totp_secret_decrypt_failed")
            raise RuntimeError("stored TOTP secret cannot be decrypted") from exc


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict row, tolerating absent keys."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value
