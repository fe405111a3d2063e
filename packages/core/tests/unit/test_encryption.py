"""Tests for encryption utilities."""

import os

import pytest
from cryptography.fernet import Fernet

from byokrouter.infrastructure.utils.encryption import EncryptionError, EncryptionService


class TestEncryption:
    """Tests for EncryptionService."""

    def setup_method(self) -> None:
        """Set up test environment."""
        self._saved_key = os.environ.get("BYOKROUTER_ENCRYPTION_KEY")
        os.environ["BYOKROUTER_ENCRYPTION_KEY"] = Fernet.generate_key().decode()

    def teardown_method(self) -> None:
        """Restore the session key."""
        if self._saved_key is not None:
            os.environ["BYOKROUTER_ENCRYPTION_KEY"] = self._saved_key
        os.environ.pop("BYOKROUTER_ENCRYPTION_SALT", None)
        os.environ.pop("ENVIRONMENT", None)

    def test_encrypt_decrypt_roundtrip(self) -> None:
        service = EncryptionService()
        original = "sk-test-1234567890abcdef"

        encrypted = service.encrypt(original)
        assert encrypted != original
        assert original not in encrypted
        assert service.decrypt(encrypted) == original

    def test_same_secret_encrypts_differently(self) -> None:
        """Fernet tokens carry a random IV."""
        service = EncryptionService()
        first = service.encrypt("sk-test-key")
        second = service.encrypt("sk-test-key")
        assert first != second
        assert service.decrypt(first) == service.decrypt(second)

    def test_passphrase_is_derived(self) -> None:
        """Non-Fernet values are stretched with PBKDF2, deterministically."""
        first = EncryptionService("correct horse battery staple")
        second = EncryptionService("correct horse battery staple")
        assert second.decrypt(first.encrypt("sk-secret-value")) == "sk-secret-value"

    def test_different_salt_cannot_decrypt(self) -> None:
        first = EncryptionService("passphrase", salt="salt-a")
        second = EncryptionService("passphrase", salt="salt-b")
        with pytest.raises(EncryptionError):
            second.decrypt(first.encrypt("sk-secret-value"))

    def test_wrong_key_cannot_decrypt(self) -> None:
        token = EncryptionService(Fernet.generate_key().decode()).encrypt("sk-secret-value")
        with pytest.raises(EncryptionError, match="invalid token or key"):
            EncryptionService(Fernet.generate_key().decode()).decrypt(token)

    def test_missing_key_in_production_raises(self) -> None:
        os.environ.pop("BYOKROUTER_ENCRYPTION_KEY", None)
        os.environ["ENVIRONMENT"] = "production"
        with pytest.raises(EncryptionError, match="BYOKROUTER_ENCRYPTION_KEY"):
            EncryptionService()

    def test_missing_key_in_development_generates_one(self) -> None:
        os.environ.pop("BYOKROUTER_ENCRYPTION_KEY", None)
        service = EncryptionService()
        assert os.environ.get("BYOKROUTER_ENCRYPTION_KEY")
        assert service.decrypt(service.encrypt("sk-dev-secret")) == "sk-dev-secret"
