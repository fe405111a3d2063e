"""Encryption utilities for storing provider secrets at rest."""

import os
from base64 import b64encode

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

ENCRYPTION_KEY_ENV = "BYOKROUTER_ENCRYPTION_KEY"
ENCRYPTION_SALT_ENV = "BYOKROUTER_ENCRYPTION_SALT"


class EncryptionError(Exception):
    """Raised when encryption/decryption operations fail."""

    pass


class EncryptionService:
    """Encrypts and decrypts provider secrets with Fernet.

    The key comes from the constructor or BYOKROUTER_ENCRYPTION_KEY. A
    44-character value is used as a Fernet key directly; anything else is
    treated as a passphrase and stretched with PBKDF2.
    """

    def __init__(self, encryption_key: str | None = None, salt: str | None = None) -> None:
        """Initialize EncryptionService with encryption key.

        Args:
            encryption_key: Optional Fernet key or passphrase. If None, loads from
                BYOKROUTER_ENCRYPTION_KEY. Outside production (ENVIRONMENT !=
                'production') a key is generated for the session if none is set.
            salt: Optional PBKDF2 salt for passphrases. Defaults to
                BYOKROUTER_ENCRYPTION_SALT or a fixed value.

        Raises:
            EncryptionError: If no key is available in production, or the key
                is malformed.
        """
        if encryption_key is None:
            encryption_key = os.getenv(ENCRYPTION_KEY_ENV)
            if not encryption_key:
                environment = os.getenv("ENVIRONMENT", os.getenv("ENV", "development")).lower()
                if environment == "production":
                    raise EncryptionError(
                        f"{ENCRYPTION_KEY_ENV} environment variable is required for encryption in production"
                    )
                # Development: secrets will not survive a restart
                encryption_key = Fernet.generate_key().decode()
                os.environ[ENCRYPTION_KEY_ENV] = encryption_key

        self._salt = (salt or os.getenv(ENCRYPTION_SALT_ENV, "byokrouter-salt")).encode()
        try:
            self._fernet = Fernet(self._get_fernet_key(encryption_key))
        except ValueError as e:
            raise EncryptionError(f"Invalid encryption key format: {e}") from e

    def _get_fernet_key(self, key_str: str) -> bytes:
        """Get Fernet key bytes from a Fernet key or a passphrase."""
        if len(key_str) == 44:
            return key_str.encode()

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self._salt,
            iterations=100000,
        )
        return b64encode(kdf.derive(key_str.encode()))

    def encrypt(self, secret: str) -> str:
        """Encrypt a secret.

        Args:
            secret: Plain text provider API key.

        Returns:
            Fernet token as a string.

        Raises:
            EncryptionError: If encryption fails.
        """
        try:
            return self._fernet.encrypt(secret.encode()).decode()
        except Exception as e:
            raise EncryptionError(f"Failed to encrypt secret: {e}") from e

    def decrypt(self, token: str) -> str:
        """Decrypt a secret.

        Args:
            token: Fernet token produced by encrypt().

        Returns:
            Plain text provider API key.

        Raises:
            EncryptionError: If the token is invalid or was made with another key.
        """
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise EncryptionError("Failed to decrypt secret: invalid token or key") from e
        except Exception as e:
            raise EncryptionError(f"Failed to decrypt secret: {e}") from e
