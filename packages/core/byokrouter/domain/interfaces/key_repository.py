"""KeyRepository interface for persisting users' API key records.

Implementations must apply counter updates and the auth-failure threshold
flip as single atomic operations: many in-flight requests may report usage
for the same key at once.

Example:
    ```python
    from byokrouter.infrastructure.state_store.memory_store import InMemoryKeyRepository

    repo: KeyRepository = InMemoryKeyRepository()
    stored = await repo.upsert_key(record)
    await repo.increment_usage(stored.id, tokens=120)
    ```
"""

from abc import ABC, abstractmethod
from datetime import datetime

from byokrouter.domain.models.api_key import ApiKeyRecord


class KeyStoreError(Exception):
    """Raised when key persistence operations fail."""

    pass


class KeyRepository(ABC):
    """Abstract storage for ApiKeyRecord rows, unique per (user_id, provider)."""

    @abstractmethod
    async def upsert_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        """Insert a record, or replace the secret of the user's existing key.

        If the user already has a record for record.provider, that record
        keeps its id and counters; its secret, hint and validation state are
        replaced and it is reactivated.

        Args:
            record: The record to store.

        Returns:
            The record as stored.

        Raises:
            KeyStoreError: If the write fails.
        """
        pass

    @abstractmethod
    async def get_key(self, key_id: str) -> ApiKeyRecord | None:
        """Retrieve a record by id, or None if it does not exist.

        Raises:
            KeyStoreError: If the read fails.
        """
        pass

    @abstractmethod
    async def list_keys(self, user_id: str) -> list[ApiKeyRecord]:
        """List all records owned by a user.

        Raises:
            KeyStoreError: If the read fails.
        """
        pass

    @abstractmethod
    async def delete_key(self, key_id: str) -> bool:
        """Hard-delete a record.

        Returns:
            True if a record was deleted, False if none existed.

        Raises:
            KeyStoreError: If the delete fails.
        """
        pass

    @abstractmethod
    async def update_validation(
        self,
        key_id: str,
        is_valid: bool,
        error: str | None,
        validated_at: datetime,
    ) -> ApiKeyRecord | None:
        """Store the outcome of a re-validation.

        A successful validation also resets consecutive_auth_failures.

        Returns:
            The updated record, or None if it does not exist.

        Raises:
            KeyStoreError: If the write fails.
        """
        pass

    @abstractmethod
    async def increment_usage(
        self,
        key_id: str,
        tokens: int,
        used_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        """Atomically add one request and `tokens` tokens to the counters.

        Also resets consecutive_auth_failures and stamps last_used_at. When
        error is given (a billable failure), it is stored as last_error.
        A key deleted while its request was in flight is ignored.

        Raises:
            KeyStoreError: If the write fails.
        """
        pass

    @abstractmethod
    async def record_error(self, key_id: str, error: str) -> None:
        """Store last_error without touching counters or validity.

        Raises:
            KeyStoreError: If the write fails.
        """
        pass

    @abstractmethod
    async def register_auth_failure(
        self,
        key_id: str,
        error: str,
        threshold: int,
    ) -> ApiKeyRecord | None:
        """Atomically count a provider-reported auth failure.

        Increments consecutive_auth_failures and stores last_error; when the
        count reaches threshold, sets is_valid=False in the same operation.

        Returns:
            The updated record, or None if it does not exist.

        Raises:
            KeyStoreError: If the write fails.
        """
        pass

    @abstractmethod
    async def mark_invalid(self, key_id: str, error: str) -> ApiKeyRecord | None:
        """Set is_valid=False and store last_error immediately.

        Returns:
            The updated record, or None if it does not exist.

        Raises:
            KeyStoreError: If the write fails.
        """
        pass
