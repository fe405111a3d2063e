"""In-memory implementations of the key repository, credit ledger and usage log.

These are the default backends. They need no external services and are
safe for concurrent use from many coroutines of one event loop: every
read-modify-write runs inside a single asyncio.Lock critical section.

Example:
    ```python
    from byokrouter.infrastructure.state_store.memory_store import InMemoryCreditLedger

    ledger = InMemoryCreditLedger()
    await ledger.add_credits("user-1", 10)
    reservation = await ledger.reserve("user-1", 3)
    await ledger.commit(reservation, actual_amount=2, reason="chat")
    ```
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

from byokrouter.domain.interfaces.credit_ledger import (
    CreditLedger,
    InsufficientCreditError,
    LedgerError,
)
from byokrouter.domain.interfaces.key_repository import KeyRepository, KeyStoreError
from byokrouter.domain.interfaces.usage_log import UsageLog
from byokrouter.domain.models.api_key import ApiKeyRecord
from byokrouter.domain.models.usage import (
    CreditReservation,
    CreditTransaction,
    UsageEvent,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InMemoryKeyRepository(KeyRepository):
    """Dictionary-backed KeyRepository.

    Attributes:
        _keys: Records keyed by id.
        _by_owner: Index of (user_id, provider) to record id.
        _write_lock: asyncio.Lock serializing every mutation.
    """

    def __init__(self) -> None:
        self._keys: dict[str, ApiKeyRecord] = {}
        self._by_owner: dict[tuple[str, str], str] = {}
        self._write_lock = asyncio.Lock()

    async def upsert_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        async with self._write_lock:
            owner = (record.user_id, record.provider.value)
            existing_id = self._by_owner.get(owner)
            if existing_id is not None and existing_id in self._keys:
                existing = self._keys[existing_id]
                stored = existing.model_copy(
                    update={
                        "encrypted_secret": record.encrypted_secret,
                        "key_hint": record.key_hint,
                        "is_active": True,
                        "is_valid": record.is_valid,
                        "last_error": record.last_error,
                        "consecutive_auth_failures": 0,
                        "validated_at": record.validated_at,
                        "updated_at": _utcnow(),
                    }
                )
            else:
                stored = record.model_copy()
                self._by_owner[owner] = stored.id
            self._keys[stored.id] = stored
            return stored.model_copy()

    async def get_key(self, key_id: str) -> ApiKeyRecord | None:
        record = self._keys.get(key_id)
        return record.model_copy() if record else None

    async def list_keys(self, user_id: str) -> list[ApiKeyRecord]:
        records = [r.model_copy() for r in self._keys.values() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.created_at)

    async def delete_key(self, key_id: str) -> bool:
        async with self._write_lock:
            record = self._keys.pop(key_id, None)
            if record is None:
                return False
            self._by_owner.pop((record.user_id, record.provider.value), None)
            return True

    async def update_validation(
        self,
        key_id: str,
        is_valid: bool,
        error: str | None,
        validated_at: datetime,
    ) -> ApiKeyRecord | None:
        changes: dict[str, Any] = {
            "is_valid": is_valid,
            "last_error": error,
            "validated_at": validated_at,
        }
        if is_valid:
            changes["consecutive_auth_failures"] = 0
        return await self._update(key_id, changes)

    async def increment_usage(
        self,
        key_id: str,
        tokens: int,
        used_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        async with self._write_lock:
            record = self._keys.get(key_id)
            if record is None:
                # Deleted while the request was in flight
                return
            changes: dict[str, Any] = {
                "total_requests": record.total_requests + 1,
                "total_tokens": record.total_tokens + max(tokens, 0),
                "consecutive_auth_failures": 0,
                "last_used_at": used_at or _utcnow(),
                "updated_at": _utcnow(),
            }
            if error is not None:
                changes["last_error"] = error
            self._keys[key_id] = record.model_copy(update=changes)

    async def record_error(self, key_id: str, error: str) -> None:
        await self._update(key_id, {"last_error": error})

    async def register_auth_failure(
        self,
        key_id: str,
        error: str,
        threshold: int,
    ) -> ApiKeyRecord | None:
        async with self._write_lock:
            record = self._keys.get(key_id)
            if record is None:
                return None
            failures = record.consecutive_auth_failures + 1
            changes: dict[str, Any] = {
                "consecutive_auth_failures": failures,
                "last_error": error,
                "updated_at": _utcnow(),
            }
            if failures >= threshold:
                changes["is_valid"] = False
            updated = record.model_copy(update=changes)
            self._keys[key_id] = updated
            return updated.model_copy()

    async def mark_invalid(self, key_id: str, error: str) -> ApiKeyRecord | None:
        return await self._update(key_id, {"is_valid": False, "last_error": error})

    async def _update(self, key_id: str, changes: dict[str, Any]) -> ApiKeyRecord | None:
        async with self._write_lock:
            record = self._keys.get(key_id)
            if record is None:
                return None
            updated = record.model_copy(update={**changes, "updated_at": _utcnow()})
            self._keys[key_id] = updated
            return updated.model_copy()


class InMemoryCreditLedger(CreditLedger):
    """Dictionary-backed CreditLedger.

    Reservation is a check and decrement inside one lock section, so
    concurrent reservations can never overdraw the balance.
    """

    def __init__(self, balances: dict[str, int] | None = None) -> None:
        self._balances: dict[str, int] = dict(balances or {})
        self._open_reservations: dict[str, CreditReservation] = {}
        self._transactions: list[CreditTransaction] = []
        self._write_lock = asyncio.Lock()

    async def get_balance(self, user_id: str) -> int:
        return self._balances.get(user_id, 0)

    async def add_credits(self, user_id: str, amount: int) -> int:
        if amount <= 0:
            raise LedgerError("Credit grant must be positive")
        async with self._write_lock:
            self._balances[user_id] = self._balances.get(user_id, 0) + amount
            return self._balances[user_id]

    async def reserve(
        self,
        user_id: str,
        amount: int,
        reference_id: str | None = None,
    ) -> CreditReservation:
        if amount <= 0:
            raise LedgerError("Reservation amount must be positive")
        async with self._write_lock:
            balance = self._balances.get(user_id, 0)
            if balance < amount:
                raise InsufficientCreditError(user_id, amount, balance)
            self._balances[user_id] = balance - amount
            reservation = CreditReservation(
                user_id=user_id,
                amount=amount,
                balance_before=balance,
                balance_after=balance - amount,
                reference_id=reference_id,
            )
            self._open_reservations[reservation.id] = reservation
            return reservation

    async def commit(
        self,
        reservation: CreditReservation,
        actual_amount: int,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction:
        charged = min(max(actual_amount, 0), reservation.amount)
        async with self._write_lock:
            if self._open_reservations.pop(reservation.id, None) is None:
                raise LedgerError(f"Unknown or settled reservation: {reservation.id}")
            refund = reservation.amount - charged
            balance_after = self._balances.get(reservation.user_id, 0) + refund
            self._balances[reservation.user_id] = balance_after
            transaction = CreditTransaction(
                user_id=reservation.user_id,
                amount=charged,
                balance_before=balance_after + charged,
                balance_after=balance_after,
                reference_id=reservation.reference_id,
                reason=reason,
                metadata=metadata or {},
            )
            self._transactions.append(transaction)
            return transaction

    async def release(self, reservation: CreditReservation) -> None:
        async with self._write_lock:
            if self._open_reservations.pop(reservation.id, None) is None:
                return
            self._balances[reservation.user_id] = (
                self._balances.get(reservation.user_id, 0) + reservation.amount
            )

    async def list_transactions(
        self,
        user_id: str,
        limit: int | None = None,
    ) -> list[CreditTransaction]:
        rows = [t for t in reversed(self._transactions) if t.user_id == user_id]
        return rows[:limit] if limit else rows


class InMemoryUsageLog(UsageLog):
    """List-backed BYOK usage log."""

    def __init__(self) -> None:
        self._events: list[UsageEvent] = []
        self._write_lock = asyncio.Lock()

    async def append(self, event: UsageEvent) -> None:
        if not event.is_byok:
            raise KeyStoreError("Only BYOK usage events belong in the usage log")
        async with self._write_lock:
            self._events.append(event)

    async def list_events(
        self,
        user_id: str,
        since: datetime | None = None,
    ) -> list[UsageEvent]:
        return [
            e
            for e in self._events
            if e.user_id == user_id and (since is None or e.created_at >= since)
        ]
