"""Tests for the in-memory key repository, credit ledger and usage log."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from byokrouter.domain.interfaces.credit_ledger import InsufficientCreditError, LedgerError
from byokrouter.domain.interfaces.key_repository import KeyStoreError
from byokrouter.domain.models.api_key import ApiKeyRecord
from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.task import TaskKind
from byokrouter.domain.models.usage import UsageEvent
from byokrouter.infrastructure.state_store.memory_store import (
    InMemoryCreditLedger,
    InMemoryKeyRepository,
    InMemoryUsageLog,
)


def make_record(user_id: str = "user-1", provider: Provider = Provider.OpenAI) -> ApiKeyRecord:
    return ApiKeyRecord(
        user_id=user_id,
        provider=provider,
        encrypted_secret="gAAAAA-token",
        key_hint="...abcd",
    )


class TestInMemoryKeyRepository:
    """Tests for InMemoryKeyRepository."""

    def setup_method(self) -> None:
        self.repository = InMemoryKeyRepository()

    @pytest.mark.asyncio
    async def test_upsert_is_unique_per_user_and_provider(self) -> None:
        first = await self.repository.upsert_key(make_record())
        await self.repository.increment_usage(first.id, tokens=10)
        second = await self.repository.upsert_key(make_record())

        assert second.id == first.id
        assert second.total_requests == 1
        assert len(await self.repository.list_keys("user-1")) == 1

        other = await self.repository.upsert_key(make_record(provider=Provider.Anthropic))
        assert other.id != first.id
        assert len(await self.repository.list_keys("user-1")) == 2

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self) -> None:
        stored = await self.repository.upsert_key(make_record())
        stored.is_valid = False
        assert (await self.repository.get_key(stored.id)).is_valid

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        stored = await self.repository.upsert_key(make_record())
        assert await self.repository.delete_key(stored.id)
        assert not await self.repository.delete_key(stored.id)
        assert await self.repository.get_key(stored.id) is None

    @pytest.mark.asyncio
    async def test_concurrent_auth_failures_cross_threshold_once(self) -> None:
        stored = await self.repository.upsert_key(make_record())

        results = await asyncio.gather(
            *(
                self.repository.register_auth_failure(stored.id, "401", threshold=3)
                for _ in range(10)
            )
        )

        crossings = [r for r in results if r.consecutive_auth_failures == 3]
        assert len(crossings) == 1
        assert not (await self.repository.get_key(stored.id)).is_valid

    @pytest.mark.asyncio
    async def test_usage_on_deleted_key_is_ignored(self) -> None:
        stored = await self.repository.upsert_key(make_record())
        await self.repository.delete_key(stored.id)
        await self.repository.increment_usage(stored.id, tokens=5)
        assert await self.repository.register_auth_failure(stored.id, "401", 3) is None


class TestInMemoryCreditLedger:
    """Tests for InMemoryCreditLedger."""

    def setup_method(self) -> None:
        self.ledger = InMemoryCreditLedger({"user-1": 10})

    @pytest.mark.asyncio
    async def test_reserve_and_commit_refunds_unused(self) -> None:
        reservation = await self.ledger.reserve("user-1", 6, reference_id="req-1")
        assert await self.ledger.get_balance("user-1") == 4

        transaction = await self.ledger.commit(reservation, actual_amount=2, reason="chat:gpt-4o")

        assert transaction.amount == 2
        assert transaction.balance_after == 8
        assert transaction.balance_before == 10
        assert await self.ledger.get_balance("user-1") == 8
        assert await self.ledger.list_transactions("user-1") == [transaction]

    @pytest.mark.asyncio
    async def test_commit_is_clamped_to_reservation(self) -> None:
        reservation = await self.ledger.reserve("user-1", 3)
        transaction = await self.ledger.commit(reservation, actual_amount=50, reason="chat")
        assert transaction.amount == 3
        assert await self.ledger.get_balance("user-1") == 7

    @pytest.mark.asyncio
    async def test_release_returns_hold(self) -> None:
        reservation = await self.ledger.reserve("user-1", 5)
        await self.ledger.release(reservation)
        await self.ledger.release(reservation)
        assert await self.ledger.get_balance("user-1") == 10
        assert await self.ledger.list_transactions("user-1") == []

    @pytest.mark.asyncio
    async def test_settled_reservation_cannot_be_committed_twice(self) -> None:
        reservation = await self.ledger.reserve("user-1", 5)
        await self.ledger.commit(reservation, actual_amount=5, reason="chat")
        with pytest.raises(LedgerError):
            await self.ledger.commit(reservation, actual_amount=5, reason="chat")
        await self.ledger.release(reservation)
        assert await self.ledger.get_balance("user-1") == 5

    @pytest.mark.asyncio
    async def test_insufficient_credit(self) -> None:
        with pytest.raises(InsufficientCreditError) as exc_info:
            await self.ledger.reserve("user-1", 11)
        assert exc_info.value.available == 10
        assert await self.ledger.get_balance("user-1") == 10

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_overdraw(self) -> None:
        """Balance for exactly 3 reservations of 3: the other 7 are rejected."""
        results = await asyncio.gather(
            *(self.ledger.reserve("user-1", 3) for _ in range(10)),
            return_exceptions=True,
        )

        granted = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InsufficientCreditError)]
        assert len(granted) == 3
        assert len(rejected) == 7
        assert await self.ledger.get_balance("user-1") == 1

    @pytest.mark.asyncio
    async def test_invalid_amounts(self) -> None:
        with pytest.raises(LedgerError):
            await self.ledger.reserve("user-1", 0)
        with pytest.raises(LedgerError):
            await self.ledger.add_credits("user-1", -5)
        assert await self.ledger.add_credits("user-2", 5) == 5
        assert await self.ledger.get_balance("unknown") == 0


class TestInMemoryUsageLog:
    """Tests for InMemoryUsageLog."""

    def setup_method(self) -> None:
        self.log = InMemoryUsageLog()

    def _event(self, user_id: str = "user-1", **overrides) -> UsageEvent:
        values = {
            "user_id": user_id,
            "provider": Provider.OpenAI,
            "model": "gpt-4o-mini",
            "task_kind": TaskKind.Chat,
            "total_tokens": 10,
            "byok_key_id": "key-1",
        }
        values.update(overrides)
        return UsageEvent(**values)

    @pytest.mark.asyncio
    async def test_append_and_filter(self) -> None:
        old = self._event(created_at=datetime.now(UTC) - timedelta(days=40))
        recent = self._event()
        await self.log.append(old)
        await self.log.append(recent)
        await self.log.append(self._event(user_id="user-2"))

        since = datetime.now(UTC) - timedelta(days=30)
        assert await self.log.list_events("user-1", since=since) == [recent]
        assert len(await self.log.list_events("user-1")) == 2

    @pytest.mark.asyncio
    async def test_rejects_internal_events(self) -> None:
        with pytest.raises(KeyStoreError):
            await self.log.append(self._event(byok_key_id=None, balance_after=5))
