"""KeyStore component for users' own provider keys."""

import asyncio
from typing import Any

from byokrouter.domain.interfaces.key_repository import KeyRepository
from byokrouter.domain.interfaces.observability_manager import (
    ObservabilityManager,
    emit_safely,
)
from byokrouter.domain.interfaces.provider_client import ProviderClient
from byokrouter.domain.models.api_key import (
    ApiKeyRecord,
    KeyCandidate,
    KeyValidationResult,
    make_key_hint,
)
from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.system_error import ErrorKind, ProviderError
from byokrouter.infrastructure.utils.encryption import EncryptionError, EncryptionService
from byokrouter.infrastructure.utils.validation import (
    ValidationError,
    validate_provider,
    validate_secret,
    validate_user_id,
)


class KeyValidationError(Exception):
    """Raised when a submitted key fails format checks or live validation.

    Nothing is persisted when this is raised.
    """

    def __init__(
        self,
        message: str,
        provider: Provider | None = None,
        reason: str = "rejected",
    ) -> None:
        """Initialize KeyValidationError.

        Args:
            message: The provider's rejection reason, or the format problem.
            provider: Provider the key was submitted for.
            reason: "invalid_format", "rejected" or "validation_unavailable".
        """
        self.message = message
        self.provider = provider
        self.reason = reason
        super().__init__(self.message)


class KeyNotFoundError(Exception):
    """Raised when a key does not exist or is not owned by the caller."""

    pass


class KeyHandle:
    """A usable key as handed to the dispatcher.

    The secret stays encrypted until reveal() is called at the moment of use.
    """

    def __init__(self, record: ApiKeyRecord, encryption_service: EncryptionService) -> None:
        self.key_id = record.id
        self.provider = record.provider
        self.key_hint = record.key_hint
        self.validated_at = record.validated_at
        self.last_used_at = record.last_used_at
        self._encrypted_secret = record.encrypted_secret
        self._encryption_service = encryption_service

    def reveal(self) -> str:
        """Decrypt the secret.

        Raises:
            EncryptionError: If the stored token cannot be decrypted.
        """
        return self._encryption_service.decrypt(self._encrypted_secret)

    def to_candidate(self) -> KeyCandidate:
        return KeyCandidate(
            key_id=self.key_id,
            provider=self.provider,
            validated_at=self.validated_at,
            last_used_at=self.last_used_at,
        )

    def __repr__(self) -> str:
        return f"KeyHandle(key_id={self.key_id!r}, provider={self.provider.value}, key_hint={self.key_hint!r})"


class KeyStore:
    """Manages users' own API keys: validation, storage, usage and validity.

    Secrets are validated live against the provider before they are stored,
    encrypted at rest, and only decrypted through KeyHandle.reveal(). Usage
    reports flow back here so that a key the provider keeps rejecting is
    taken out of routing once auth_failure_threshold is reached.
    """

    def __init__(
        self,
        key_repository: KeyRepository,
        provider_clients: dict[Provider, ProviderClient],
        observability_manager: ObservabilityManager,
        encryption_service: EncryptionService | None = None,
        auth_failure_threshold: int = 3,
        validation_timeout_seconds: float = 10.0,
    ) -> None:
        """Initialize KeyStore with dependencies.

        Args:
            key_repository: Persistence for key records.
            provider_clients: Clients used for live validation, by provider.
            observability_manager: ObservabilityManager for events and logging.
            encryption_service: Optional EncryptionService. If None, one is
                created from BYOKROUTER_ENCRYPTION_KEY.
            auth_failure_threshold: Consecutive provider auth failures before a
                key is marked invalid.
            validation_timeout_seconds: Timeout for one live validation call.
        """
        self._repository = key_repository
        self._clients = provider_clients
        self._observability = observability_manager
        self._encryption_service = encryption_service or EncryptionService()
        self._auth_failure_threshold = auth_failure_threshold
        self._validation_timeout = validation_timeout_seconds

    @property
    def auth_failure_threshold(self) -> int:
        return self._auth_failure_threshold

    async def add_or_replace_key(
        self,
        user_id: str,
        provider: Provider | str,
        raw_secret: str,
    ) -> ApiKeyRecord:
        """Validate a key with its provider and store it.

        If the user already has a key for the provider, its secret is
        replaced in place and the record keeps its id and counters.

        Args:
            user_id: Owner of the key.
            provider: Provider the key is for.
            raw_secret: Plain text API key.

        Returns:
            The stored record.

        Raises:
            ValidationError: If user_id or provider is malformed or unsupported.
            KeyValidationError: If the secret is malformed, the provider rejects
                it, or the provider cannot be reached.
            KeyStoreError: If persistence fails.
        """
        user_id = validate_user_id(user_id)
        provider = validate_provider(provider)
        try:
            secret = validate_secret(raw_secret)
        except ValidationError as e:
            raise KeyValidationError(e.message, provider=provider, reason="invalid_format") from e

        try:
            result = await self._validate(provider, secret)
        except ProviderError as e:
            raise KeyValidationError(
                f"Could not validate key with {provider.value}: {e.message}",
                provider=provider,
                reason="validation_unavailable",
            ) from e
        if not result.valid:
            raise KeyValidationError(
                result.error or "Invalid API key",
                provider=provider,
                reason="rejected",
            )

        record = ApiKeyRecord(
            user_id=user_id,
            provider=provider,
            encrypted_secret=self._encryption_service.encrypt(secret),
            key_hint=make_key_hint(secret),
            is_valid=True,
            validated_at=result.checked_at,
        )
        stored = await self._repository.upsert_key(record)

        await emit_safely(
            self._observability,
            "key_added",
            {
                "key_id": stored.id,
                "user_id": user_id,
                "provider": provider.value,
                "key_hint": stored.key_hint,
                "replaced": stored.id != record.id,
            },
        )
        return stored

    async def list_keys(self, user_id: str) -> list[dict[str, Any]]:
        """List a user's keys without their secrets."""
        records = await self._repository.list_keys(user_id)
        return [record.public_view() for record in records]

    async def delete_key(self, user_id: str, key_id: str) -> None:
        """Hard-delete one of the user's keys.

        Raises:
            KeyNotFoundError: If the key does not exist or belongs to someone else.
        """
        record = await self._get_owned(user_id, key_id)
        if not await self._repository.delete_key(record.id):
            raise KeyNotFoundError(f"API key not found: {key_id}")

        await emit_safely(
            self._observability,
            "key_deleted",
            {"key_id": key_id, "user_id": user_id, "provider": record.provider.value},
        )

    async def test_key(self, user_id: str, key_id: str) -> KeyValidationResult:
        """Re-run live validation for a stored key and store the outcome.

        Raises:
            KeyNotFoundError: If the key does not exist or belongs to someone else.
            ProviderError: If the provider could not be reached to decide.
        """
        record = await self._get_owned(user_id, key_id)
        try:
            secret = self._encryption_service.decrypt(record.encrypted_secret)
        except EncryptionError as e:
            # Stored under a different encryption key; the user must re-add it
            result = KeyValidationResult(
                provider=record.provider,
                valid=False,
                error=f"Stored API key could not be decrypted: {e}",
            )
        else:
            result = await self._validate(record.provider, secret)
        await self._repository.update_validation(
            record.id,
            is_valid=result.valid,
            error=result.error,
            validated_at=result.checked_at,
        )
        if not result.valid and record.is_valid:
            await self._emit_invalidated(record.id, record.provider, result.error, "revalidation")
        return result

    async def get_active_keys_by_provider(self, user_id: str) -> dict[Provider, KeyHandle]:
        """Return the user's usable keys (active and valid), one per provider."""
        records = await self._repository.list_keys(user_id)
        return {
            record.provider: KeyHandle(record, self._encryption_service)
            for record in records
            if record.is_usable
        }

    async def get_key_candidates(self, user_id: str) -> tuple[KeyCandidate, ...]:
        """Routing inputs for the user's usable keys."""
        handles = await self.get_active_keys_by_provider(user_id)
        return tuple(handle.to_candidate() for handle in handles.values())

    async def record_usage(
        self,
        key_id: str,
        tokens: int,
        cost_cents: int,
        error: str | None = None,
        auth_failure: bool = False,
    ) -> None:
        """Report the outcome of a call made with a stored key.

        A success (or billable failure) bumps the counters and resets the
        consecutive auth-failure count. An auth failure increments that count
        instead; reaching the threshold marks the key invalid in the same
        atomic update.

        Args:
            key_id: Key the call ran on.
            tokens: Tokens consumed.
            cost_cents: Provider cost of the call.
            error: Error message for billable failures.
            auth_failure: True if the provider rejected the credential.
        """
        if auth_failure:
            updated = await self._repository.register_auth_failure(
                key_id,
                error=error or "Authentication failed",
                threshold=self._auth_failure_threshold,
            )
            # Emit once, on the update that crossed the threshold
            if (
                updated is not None
                and not updated.is_valid
                and updated.consecutive_auth_failures == self._auth_failure_threshold
            ):
                await self._emit_invalidated(
                    key_id, updated.provider, updated.last_error, "auth_failure_threshold"
                )
            return

        await self._repository.increment_usage(key_id, tokens=tokens, error=error)
        await self._observability.log(
            level="DEBUG",
            message="Key usage recorded",
            context={"key_id": key_id, "tokens": tokens, "cost_cents": cost_cents},
        )

    async def record_error(self, key_id: str, error: str) -> None:
        """Store a non-billable failure as last_error; validity is unchanged."""
        await self._repository.record_error(key_id, error)

    async def mark_invalid(self, key_id: str, error: str) -> None:
        """Take a key out of routing immediately."""
        updated = await self._repository.mark_invalid(key_id, error)
        if updated is not None:
            await self._emit_invalidated(key_id, updated.provider, error, "fallback")

    async def _get_owned(self, user_id: str, key_id: str) -> ApiKeyRecord:
        record = await self._repository.get_key(key_id)
        if record is None or record.user_id != user_id:
            raise KeyNotFoundError(f"API key not found: {key_id}")
        return record

    async def _validate(self, provider: Provider, secret: str) -> KeyValidationResult:
        client = self._clients.get(provider)
        if client is None:
            raise ProviderError(
                kind=ErrorKind.Other,
                message=f"No client configured for provider {provider.value}",
                provider=provider,
            )
        try:
            return await asyncio.wait_for(
                client.validate_key(secret),
                timeout=self._validation_timeout,
            )
        except TimeoutError as e:
            raise ProviderError(
                kind=ErrorKind.Transient,
                message=f"Validation timed out after {self._validation_timeout}s",
                provider=provider,
                provider_code="timeout",
            ) from e

    async def _emit_invalidated(
        self,
        key_id: str,
        provider: Provider,
        error: str | None,
        cause: str,
    ) -> None:
        await emit_safely(
            self._observability,
            "key_invalidated",
            {
                "key_id": key_id,
                "provider": provider.value,
                "error": error,
                "cause": cause,
            },
        )
