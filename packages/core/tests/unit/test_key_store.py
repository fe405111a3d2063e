"""Tests for KeyStore component."""

import asyncio

import pytest
from cryptography.fernet import Fernet

from byokrouter.domain.components.key_store import (
    KeyNotFoundError,
    KeyStore,
    KeyValidationError,
)
from byokrouter.domain.interfaces.observability_manager import ObservabilityManager
from byokrouter.domain.interfaces.provider_client import ProviderClient
from byokrouter.domain.models.api_key import KeyValidationResult
from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.system_error import ErrorKind, ProviderError
from byokrouter.domain.models.system_response import ProviderResponse
from byokrouter.domain.models.task import TaskKind
from byokrouter.infrastructure.state_store.memory_store import InMemoryKeyRepository
from byokrouter.infrastructure.utils.encryption import EncryptionService
from byokrouter.infrastructure.utils.validation import ValidationError

GOOD_SECRET = "sk-good-1234567890abcd"
OTHER_SECRET = "sk-good-abcdefghij9999"
REJECTED_SECRET = "sk-rejected-1234567890"
UNREACHABLE_SECRET = "sk-unreachable-123456"


class MockObservabilityManager(ObservabilityManager):
    """Mock ObservabilityManager for testing."""

    def __init__(self) -> None:
        self.events: list[dict] = []
        self.logs: list[dict] = []
        self.emit_error: Exception | None = None

    async def emit_event(self, event_type: str, payload: dict, metadata: dict | None = None) -> None:
        if self.emit_error:
            raise self.emit_error
        self.events.append({"event_type": event_type, "payload": payload, "metadata": metadata or {}})

    async def log(self, level: str, message: str, context: dict | None = None) -> None:
        self.logs.append({"level": level, "message": message, "context": context or {}})

    def events_of(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["event_type"] == event_type]


class MockValidatingClient(ProviderClient):
    """Provider client whose validation outcome depends on the secret."""

    def __init__(self, provider: Provider = Provider.OpenAI) -> None:
        self.provider = provider
        self.validated: list[str] = []
        self.validation_delay = 0.0

    def supports(self, kind: TaskKind) -> bool:
        return True

    async def call(self, credential, task, meter=None) -> ProviderResponse:
        raise NotImplementedError

    async def validate_key(self, secret: str) -> KeyValidationResult:
        self.validated.append(secret)
        if self.validation_delay:
            await asyncio.sleep(self.validation_delay)
        if "unreachable" in secret:
            raise ProviderError(kind=ErrorKind.Transient, message="503 from provider")
        if "rejected" in secret:
            return KeyValidationResult(
                provider=self.provider, valid=False, error="Incorrect API key provided"
            )
        return KeyValidationResult(provider=self.provider, valid=True)


class TestKeyStore:
    """Tests for KeyStore."""

    def setup_method(self) -> None:
        self.repository = InMemoryKeyRepository()
        self.observability = MockObservabilityManager()
        self.openai = MockValidatingClient(Provider.OpenAI)
        self.anthropic = MockValidatingClient(Provider.Anthropic)
        self.encryption = EncryptionService(Fernet.generate_key().decode())
        self.store = KeyStore(
            key_repository=self.repository,
            provider_clients={Provider.OpenAI: self.openai, Provider.Anthropic: self.anthropic},
            observability_manager=self.observability,
            encryption_service=self.encryption,
            auth_failure_threshold=3,
        )

    @pytest.mark.asyncio
    async def test_add_key_validates_and_encrypts(self) -> None:
        record = await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)

        assert record.provider == Provider.OpenAI
        assert record.key_hint == "...abcd"
        assert record.is_valid
        assert record.validated_at is not None
        assert GOOD_SECRET not in record.encrypted_secret
        assert self.encryption.decrypt(record.encrypted_secret) == GOOD_SECRET
        assert self.openai.validated == [GOOD_SECRET]

        events = self.observability.events_of("key_added")
        assert len(events) == 1
        assert events[0]["payload"]["replaced"] is False
        assert GOOD_SECRET not in str(events[0])

    @pytest.mark.asyncio
    async def test_add_key_replaces_existing_for_same_provider(self) -> None:
        first = await self.store.add_or_replace_key("user-1", Provider.OpenAI, GOOD_SECRET)
        second = await self.store.add_or_replace_key("user-1", Provider.OpenAI, OTHER_SECRET)

        assert second.id == first.id
        assert second.key_hint == "...9999"
        keys = await self.store.list_keys("user-1")
        assert len(keys) == 1
        assert self.observability.events_of("key_added")[-1]["payload"]["replaced"] is True

    @pytest.mark.asyncio
    async def test_rejected_key_is_not_stored(self) -> None:
        with pytest.raises(KeyValidationError) as exc_info:
            await self.store.add_or_replace_key("user-1", "openai", REJECTED_SECRET)

        assert exc_info.value.reason == "rejected"
        assert exc_info.value.message == "Incorrect API key provided"
        assert await self.store.list_keys("user-1") == []

    @pytest.mark.asyncio
    async def test_unreachable_provider_is_not_stored(self) -> None:
        with pytest.raises(KeyValidationError) as exc_info:
            await self.store.add_or_replace_key("user-1", "openai", UNREACHABLE_SECRET)

        assert exc_info.value.reason == "validation_unavailable"
        assert await self.store.list_keys("user-1") == []

    @pytest.mark.asyncio
    async def test_validation_timeout_is_unavailable(self) -> None:
        self.store = KeyStore(
            key_repository=self.repository,
            provider_clients={Provider.OpenAI: self.openai},
            observability_manager=self.observability,
            encryption_service=self.encryption,
            validation_timeout_seconds=0.01,
        )
        self.openai.validation_delay = 1.0

        with pytest.raises(KeyValidationError) as exc_info:
            await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)
        assert exc_info.value.reason == "validation_unavailable"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("secret", ["", "   ", "short", "sk-has space-1234567"])
    async def test_malformed_secret(self, secret: str) -> None:
        with pytest.raises(KeyValidationError) as exc_info:
            await self.store.add_or_replace_key("user-1", "openai", secret)
        assert exc_info.value.reason == "invalid_format"
        assert self.openai.validated == []

    @pytest.mark.asyncio
    async def test_unknown_provider(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await self.store.add_or_replace_key("user-1", "mistral", GOOD_SECRET)
        assert exc_info.value.field == "provider"

    @pytest.mark.asyncio
    async def test_list_keys_never_exposes_secret(self) -> None:
        await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)
        keys = await self.store.list_keys("user-1")

        assert len(keys) == 1
        assert "encrypted_secret" not in keys[0]
        assert GOOD_SECRET not in str(keys)
        assert await self.store.list_keys("user-2") == []

    @pytest.mark.asyncio
    async def test_delete_key_checks_ownership(self) -> None:
        record = await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)

        with pytest.raises(KeyNotFoundError):
            await self.store.delete_key("user-2", record.id)
        assert len(await self.store.list_keys("user-1")) == 1

        await self.store.delete_key("user-1", record.id)
        assert await self.store.list_keys("user-1") == []
        assert len(self.observability.events_of("key_deleted")) == 1

        with pytest.raises(KeyNotFoundError):
            await self.store.delete_key("user-1", record.id)

    @pytest.mark.asyncio
    async def test_test_key_updates_validity(self) -> None:
        record = await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)
        await self.repository.mark_invalid(record.id, "stale")

        result = await self.store.test_key("user-1", record.id)

        assert result.valid
        stored = await self.repository.get_key(record.id)
        assert stored.is_valid
        assert stored.last_error is None

    @pytest.mark.asyncio
    async def test_test_key_rejected_emits_invalidated(self) -> None:
        record = await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)
        self.openai.validate_key = self._always_reject

        result = await self.store.test_key("user-1", record.id)

        assert not result.valid
        assert result.error == "revoked"
        stored = await self.repository.get_key(record.id)
        assert not stored.is_valid
        assert stored.last_error == "revoked"
        events = self.observability.events_of("key_invalidated")
        assert events[0]["payload"]["cause"] == "revalidation"

    @pytest.mark.asyncio
    async def test_test_key_after_encryption_key_rotation(self) -> None:
        record = await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)
        rotated = KeyStore(
            key_repository=self.repository,
            provider_clients={Provider.OpenAI: self.openai},
            observability_manager=self.observability,
            encryption_service=EncryptionService(Fernet.generate_key().decode()),
        )

        result = await rotated.test_key("user-1", record.id)

        assert not result.valid
        assert result.error.startswith("Stored API key could not be decrypted")
        assert self.openai.validated == [GOOD_SECRET]
        stored = await self.repository.get_key(record.id)
        assert not stored.is_valid
        assert not stored.is_usable
        assert self.observability.events_of("key_invalidated")[0]["payload"]["cause"] == "revalidation"

    async def _always_reject(self, secret: str) -> KeyValidationResult:
        return KeyValidationResult(provider=Provider.OpenAI, valid=False, error="revoked")

    @pytest.mark.asyncio
    async def test_test_key_requires_ownership(self) -> None:
        record = await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)
        with pytest.raises(KeyNotFoundError):
            await self.store.test_key("user-2", record.id)

    @pytest.mark.asyncio
    async def test_active_keys_exclude_invalid(self) -> None:
        openai = await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)
        await self.store.add_or_replace_key("user-1", "anthropic", OTHER_SECRET)
        await self.store.mark_invalid(openai.id, "rejected during request")

        handles = await self.store.get_active_keys_by_provider("user-1")

        assert set(handles) == {Provider.Anthropic}
        assert handles[Provider.Anthropic].reveal() == OTHER_SECRET
        assert OTHER_SECRET not in repr(handles[Provider.Anthropic])
        candidates = await self.store.get_key_candidates("user-1")
        assert [c.provider for c in candidates] == [Provider.Anthropic]

    @pytest.mark.asyncio
    async def test_auth_failures_invalidate_at_threshold(self) -> None:
        """The key flips invalid on the third consecutive auth failure, once."""
        record = await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)

        for _ in range(2):
            await self.store.record_usage(record.id, 0, 0, error="401", auth_failure=True)
        stored = await self.repository.get_key(record.id)
        assert stored.is_valid
        assert stored.consecutive_auth_failures == 2

        await self.store.record_usage(record.id, 0, 0, error="401", auth_failure=True)
        await self.store.record_usage(record.id, 0, 0, error="401", auth_failure=True)

        stored = await self.repository.get_key(record.id)
        assert not stored.is_valid
        assert len(self.observability.events_of("key_invalidated")) == 1
        assert await self.store.get_active_keys_by_provider("user-1") == {}

    @pytest.mark.asyncio
    async def test_success_resets_auth_failures(self) -> None:
        record = await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)
        await self.store.record_usage(record.id, 0, 0, error="401", auth_failure=True)
        await self.store.record_usage(record.id, 0, 0, error="401", auth_failure=True)
        await self.store.record_usage(record.id, tokens=42, cost_cents=1)

        stored = await self.repository.get_key(record.id)
        assert stored.consecutive_auth_failures == 0
        assert stored.total_requests == 1
        assert stored.total_tokens == 42
        assert stored.last_used_at is not None

    @pytest.mark.asyncio
    async def test_concurrent_usage_updates_are_not_lost(self) -> None:
        record = await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)

        await asyncio.gather(
            *(self.store.record_usage(record.id, tokens=10, cost_cents=0) for _ in range(50))
        )

        stored = await self.repository.get_key(record.id)
        assert stored.total_requests == 50
        assert stored.total_tokens == 500

    @pytest.mark.asyncio
    async def test_record_error_keeps_validity(self) -> None:
        record = await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)
        await self.store.record_error(record.id, "model not found")

        stored = await self.repository.get_key(record.id)
        assert stored.is_valid
        assert stored.last_error == "model not found"

    @pytest.mark.asyncio
    async def test_observability_failure_does_not_fail_add(self) -> None:
        self.observability.emit_error = RuntimeError("sink down")

        record = await self.store.add_or_replace_key("user-1", "openai", GOOD_SECRET)

        assert record.is_valid
        assert any(log["level"] == "WARNING" for log in self.observability.logs)
