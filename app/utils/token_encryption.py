"""
Access token encryption at rest (Fernet).
When token_encryption_key is set, session access tokens are encrypted before they
reach the store, so a leaked sessions file or table does not expose usable tokens.
"""

from typing import Optional

import structlog
from cryptography.fernet import Fernet, InvalidToken

logger = structlog.get_logger()

FERNET_TOKEN_PREFIX = "gAAAAA"


class TokenCipher:
    """Encrypts/decrypts token strings; a no-op when no key is configured."""

    def __init__(self, key: Optional[str] = None):
        self._fernet = self._build_fernet(key)

    @staticmethod
    def _build_fernet(key: Optional[str]) -> Optional[Fernet]:
        key = (key or "").strip()
        if not key:
            return None
        if len(key) != 44:  # Fernet key is 44 bytes base64
            raise ValueError(f"token_encryption_key must be a 44-char Fernet key (got {len(key)})")
        return Fernet(key.encode("utf-8"))

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, value: str) -> str:
        """Encrypt value, or return it unchanged if encryption is disabled."""
        if not self._fernet or not value:
            return value
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, value: str) -> str:
        """
        Decrypt value.
        Plaintext values (written before a key was configured) are returned as-is.
        """
        if not self._fernet or not value or not value.startswith(FERNET_TOKEN_PREFIX):
            return value
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except InvalidToken:
            # Written with a different key, or plaintext that happens to share the prefix
            logger.warning("Access token decryption failed with InvalidToken; leaving value unchanged")
            return value
