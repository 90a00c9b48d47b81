"""Encryption service for securing provider API keys."""

import sys
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken

from provider_router.config import settings
from provider_router.services.exceptions import EncryptionError

KEY_HINT = "python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""


class EncryptionService:
    """Service for encrypting and decrypting provider secrets."""

    def __init__(self, key: Optional[str] = None):
        """Initialize encryption service.

        Args:
            key: Fernet key. Defaults to settings.encryption_key.
        """
        key = key or settings.encryption_key
        self._validate_encryption_key(key)
        self._fernet = Fernet(key.encode())

    @staticmethod
    def _validate_encryption_key(key: Optional[str]) -> None:
        """Validate that the encryption key is properly configured.

        Raises:
            SystemExit: If the key is missing or not a valid Fernet key.
        """
        if not key:
            print("ERROR: ENCRYPTION_KEY environment variable is not set.", file=sys.stderr)
            print("Provider API keys cannot be stored without it.", file=sys.stderr)
            print(f"Generate a key with: {KEY_HINT}", file=sys.stderr)
            sys.exit(1)

        try:
            Fernet(key.encode())
        except Exception as e:
            print(f"ERROR: Invalid ENCRYPTION_KEY format: {e}", file=sys.stderr)
            print(f"Generate a valid key with: {KEY_HINT}", file=sys.stderr)
            sys.exit(1)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt an API key.

        Keyless providers store an empty string, which is kept as-is.
        """
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt an API key.

        Raises:
            EncryptionError: If the ciphertext is corrupted or was written with another key.
        """
        if not ciphertext:
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise EncryptionError("Failed to decrypt provider API key. The key may be corrupted.") from e
