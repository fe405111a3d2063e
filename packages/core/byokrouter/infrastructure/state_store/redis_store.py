"""Redis-based key repository, credit ledger, usage log and policy source.

For deployments with several proxy instances. Every mutation that must be
atomic (counter updates, the auth-failure threshold flip, credit
reservation and settlement) runs as a Lua script, so it executes as one
step on the server.

Example:
    ```python
    from byokrouter.infrastructure.state_store.redis_store import (
        RedisCreditLedger,
        create_redis_client,
    )

    redis = create_redis_client("redis://localhost:6379/0")
    ledger = RedisCreditLedger(redis)
    await ledger.add_credits("user-1", 50)
    ```
"""

import json
import os
import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

from byokrouter.domain.interfaces.credit_ledger import (
    CreditLedger,
    InsufficientCreditError,
    LedgerError,
)
from byokrouter.domain.interfaces.key_repository import KeyRepository, KeyStoreError
from byokrouter.domain.interfaces.policy_source import PolicySource, PolicySourceError
from byokrouter.domain.interfaces.usage_log import UsageLog
from byokrouter.domain.models.api_key import ApiKeyRecord
from byokrouter.domain.models.policy import RoutingPolicy
from byokrouter.domain.models.usage import (
    CreditReservation,
    CreditTransaction,
    UsageEvent,
)

logger = structlog.get_logger(__name__)

# Redis key patterns
KEY_PATTERN_RECORD = "{prefix}:key:{key_id}"
KEY_PATTERN_OWNER_INDEX = "{prefix}:user:{user_id}:keys"
KEY_PATTERN_BALANCE = "{prefix}:credits:{user_id}"
KEY_PATTERN_RESERVATION = "{prefix}:reservation:{reservation_id}"
KEY_PATTERN_TRANSACTIONS = "{prefix}:transactions:{user_id}"
KEY_PATTERN_USAGE = "{prefix}:usage:{user_id}"
KEY_PATTERN_POLICY = "{prefix}:routing_policy"

# Sets fields on a hash only if the hash exists
_HSET_IF_EXISTS = """
if redis.call('EXISTS', KEYS[1]) == 0 then return 0 end
redis.call('HSET', KEYS[1], unpack(ARGV))
return 1
"""

_INCREMENT_USAGE = """
if redis.call('EXISTS', KEYS[1]) == 0 then return 0 end
redis.call('HINCRBY', KEYS[1], 'total_requests', 1)
redis.call('HINCRBY', KEYS[1], 'total_tokens', ARGV[1])
redis.call('HSET', KEYS[1], 'consecutive_auth_failures', 0, 'last_used_at', ARGV[2], 'updated_at', ARGV[3])
if ARGV[4] ~= '' then redis.call('HSET', KEYS[1], 'last_error', ARGV[4]) end
return 1
"""

_REGISTER_AUTH_FAILURE = """
if redis.call('EXISTS', KEYS[1]) == 0 then return -1 end
local failures = redis.call('HINCRBY', KEYS[1], 'consecutive_auth_failures', 1)
redis.call('HSET', KEYS[1], 'last_error', ARGV[1], 'updated_at', ARGV[3])
if failures >= tonumber(ARGV[2]) then redis.call('HSET', KEYS[1], 'is_valid', 'false') end
return failures
"""

_RESERVE = """
local balance = tonumber(redis.call('GET', KEYS[1]) or '0')
local amount = tonumber(ARGV[1])
if balance < amount then return {0, balance, balance} end
local after = redis.call('DECRBY', KEYS[1], amount)
redis.call('SET', KEYS[2], amount)
return {1, balance, after}
"""

_COMMIT = """
local reserved = redis.call('GET', KEYS[2])
if not reserved then return false end
redis.call('DEL', KEYS[2])
local charged = tonumber(ARGV[1])
local refund = tonumber(reserved) - charged
local after
if refund > 0 then
  after = redis.call('INCRBY', KEYS[1], refund)
else
  after = tonumber(redis.call('GET', KEYS[1]) or '0')
end
local tx = cjson.decode(ARGV[2])
tx['balance_after'] = after
tx['balance_before'] = after + charged
local encoded = cjson.encode(tx)
redis.call('LPUSH', KEYS[3], encoded)
return encoded
"""

_RELEASE = """
local reserved = redis.call('GET', KEYS[2])
if not reserved then return 0 end
redis.call('DEL', KEYS[2])
redis.call('INCRBY', KEYS[1], reserved)
return 1
"""


def create_redis_client(
    redis_url: str | None = None,
    connection_timeout: int = 5,
    max_connections: int = 20,
) -> Redis:
    """Create a pooled async Redis client.

    Args:
        redis_url: Redis connection URL. If None, reads REDIS_URL, falling back
            to redis://localhost:6379/0.
        connection_timeout: Socket connect/read timeout in seconds.
        max_connections: Pool size.
    """
    url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
    pool = ConnectionPool.from_url(
        url,
        max_connections=max_connections,
        socket_connect_timeout=connection_timeout,
        socket_timeout=connection_timeout,
        retry_on_timeout=True,
        decode_responses=True,
    )
    return Redis(connection_pool=pool)


async def check_connection(redis: Redis) -> bool:
    """Return True if the server answers PING."""
    try:
        return bool(await redis.ping())
    except RedisError as e:
        logger.warning("Redis health check failed", error=str(e))
        return False


def _now_json() -> str:
    return json.dumps(datetime.now(UTC).isoformat())


def _encode_record(record: ApiKeyRecord) -> dict[str, str]:
    """Encode each field as JSON so that counters stay HINCRBY-compatible."""
    return {field: json.dumps(value) for field, value in record.model_dump(mode="json").items()}


def _decode_record(data: dict[str, str]) -> ApiKeyRecord:
    return ApiKeyRecord.model_validate({field: json.loads(value) for field, value in data.items()})


class _RedisBacked:
    """Shared client handling for the Redis backends."""

    def __init__(self, redis: Redis, key_prefix: str = "byok") -> None:
        self._redis = redis
        self._prefix = key_prefix

    async def close(self) -> None:
        """Close the client and its connection pool."""
        await self._redis.aclose()


class RedisKeyRepository(_RedisBacked, KeyRepository):
    """KeyRepository storing each record as a hash of JSON-encoded fields.

    A per-user hash maps provider to record id and enforces one record per
    (user, provider).
    """

    def __init__(self, redis: Redis, key_prefix: str = "byok") -> None:
        super().__init__(redis, key_prefix)
        self._hset_if_exists = redis.register_script(_HSET_IF_EXISTS)
        self._increment_usage = redis.register_script(_INCREMENT_USAGE)
        self._register_auth_failure = redis.register_script(_REGISTER_AUTH_FAILURE)

    def _record_key(self, key_id: str) -> str:
        return KEY_PATTERN_RECORD.format(prefix=self._prefix, key_id=key_id)

    def _owner_index(self, user_id: str) -> str:
        return KEY_PATTERN_OWNER_INDEX.format(prefix=self._prefix, user_id=user_id)

    async def upsert_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        index = self._owner_index(record.user_id)
        try:
            claimed = await self._redis.hsetnx(index, record.provider.value, record.id)
            if claimed:
                await self._redis.hset(self._record_key(record.id), mapping=_encode_record(record))
                return record.model_copy()

            existing_id = await self._redis.hget(index, record.provider.value)
            replacement = {
                "encrypted_secret": json.dumps(record.encrypted_secret),
                "key_hint": json.dumps(record.key_hint),
                "is_active": json.dumps(True),
                "is_valid": json.dumps(record.is_valid),
                "last_error": json.dumps(record.last_error),
                "consecutive_auth_failures": "0",
                "validated_at": json.dumps(
                    record.validated_at.isoformat() if record.validated_at else None
                ),
                "updated_at": _now_json(),
            }
            await self._redis.hset(self._record_key(existing_id), mapping=replacement)
            stored = await self.get_key(existing_id)
        except RedisError as e:
            raise KeyStoreError(f"Failed to save key {record.id}: {e}") from e
        if stored is None:
            raise KeyStoreError(f"Key {existing_id} vanished during replacement")
        return stored

    async def get_key(self, key_id: str) -> ApiKeyRecord | None:
        try:
            data = await self._redis.hgetall(self._record_key(key_id))
        except RedisError as e:
            raise KeyStoreError(f"Failed to get key {key_id}: {e}") from e
        if not data or "user_id" not in data:
            return None
        return _decode_record(data)

    async def list_keys(self, user_id: str) -> list[ApiKeyRecord]:
        try:
            key_ids = await self._redis.hvals(self._owner_index(user_id))
        except RedisError as e:
            raise KeyStoreError(f"Failed to list keys for user {user_id}: {e}") from e
        records = []
        for key_id in key_ids:
            record = await self.get_key(key_id)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.created_at)

    async def delete_key(self, key_id: str) -> bool:
        record = await self.get_key(key_id)
        if record is None:
            return False
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(self._record_key(key_id))
                pipe.hdel(self._owner_index(record.user_id), record.provider.value)
                await pipe.execute()
        except RedisError as e:
            raise KeyStoreError(f"Failed to delete key {key_id}: {e}") from e
        return True

    async def update_validation(
        self,
        key_id: str,
        is_valid: bool,
        error: str | None,
        validated_at: datetime,
    ) -> ApiKeyRecord | None:
        fields = [
            "is_valid", json.dumps(is_valid),
            "last_error", json.dumps(error),
            "validated_at", json.dumps(validated_at.isoformat()),
            "updated_at", _now_json(),
        ]
        if is_valid:
            fields += ["consecutive_auth_failures", "0"]
        return await self._set_fields(key_id, fields)

    async def increment_usage(
        self,
        key_id: str,
        tokens: int,
        used_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        used = json.dumps((used_at or datetime.now(UTC)).isoformat())
        try:
            await self._increment_usage(
                keys=[self._record_key(key_id)],
                args=[max(tokens, 0), used, _now_json(), json.dumps(error) if error else ""],
            )
        except RedisError as e:
            raise KeyStoreError(f"Failed to record usage for key {key_id}: {e}") from e

    async def record_error(self, key_id: str, error: str) -> None:
        await self._set_fields(key_id, ["last_error", json.dumps(error), "updated_at", _now_json()])

    async def register_auth_failure(
        self,
        key_id: str,
        error: str,
        threshold: int,
    ) -> ApiKeyRecord | None:
        try:
            failures = await self._register_auth_failure(
                keys=[self._record_key(key_id)],
                args=[json.dumps(error), threshold, _now_json()],
            )
        except RedisError as e:
            raise KeyStoreError(f"Failed to record auth failure for key {key_id}: {e}") from e
        if int(failures) < 0:
            return None
        return await self.get_key(key_id)

    async def mark_invalid(self, key_id: str, error: str) -> ApiKeyRecord | None:
        return await self._set_fields(
            key_id,
            ["is_valid", "false", "last_error", json.dumps(error), "updated_at", _now_json()],
        )

    async def _set_fields(self, key_id: str, fields: list[str]) -> ApiKeyRecord | None:
        try:
            updated = await self._hset_if_exists(keys=[self._record_key(key_id)], args=fields)
        except RedisError as e:
            raise KeyStoreError(f"Failed to update key {key_id}: {e}") from e
        if not int(updated):
            return None
        return await self.get_key(key_id)


class RedisCreditLedger(_RedisBacked, CreditLedger):
    """CreditLedger keeping balances as integer strings.

    Reservations are stored until settled; commit() refunds the unused part
    and pushes the transaction row in the same script.
    """

    def __init__(self, redis: Redis, key_prefix: str = "byok") -> None:
        super().__init__(redis, key_prefix)
        self._reserve = redis.register_script(_RESERVE)
        self._commit = redis.register_script(_COMMIT)
        self._release = redis.register_script(_RELEASE)

    def _balance_key(self, user_id: str) -> str:
        return KEY_PATTERN_BALANCE.format(prefix=self._prefix, user_id=user_id)

    def _reservation_key(self, reservation_id: str) -> str:
        return KEY_PATTERN_RESERVATION.format(prefix=self._prefix, reservation_id=reservation_id)

    def _transactions_key(self, user_id: str) -> str:
        return KEY_PATTERN_TRANSACTIONS.format(prefix=self._prefix, user_id=user_id)

    async def get_balance(self, user_id: str) -> int:
        try:
            value = await self._redis.get(self._balance_key(user_id))
        except RedisError as e:
            raise LedgerError(f"Failed to read balance for user {user_id}: {e}") from e
        return int(value) if value is not None else 0

    async def add_credits(self, user_id: str, amount: int) -> int:
        if amount <= 0:
            raise LedgerError("Credit grant must be positive")
        try:
            return int(await self._redis.incrby(self._balance_key(user_id), amount))
        except RedisError as e:
            raise LedgerError(f"Failed to add credits for user {user_id}: {e}") from e

    async def reserve(
        self,
        user_id: str,
        amount: int,
        reference_id: str | None = None,
    ) -> CreditReservation:
        if amount <= 0:
            raise LedgerError("Reservation amount must be positive")
        reservation_id = str(uuid.uuid4())
        try:
            ok, before, after = await self._reserve(
                keys=[self._balance_key(user_id), self._reservation_key(reservation_id)],
                args=[amount],
            )
        except RedisError as e:
            raise LedgerError(f"Failed to reserve credits for user {user_id}: {e}") from e
        if not int(ok):
            raise InsufficientCreditError(user_id, amount, int(before))
        return CreditReservation(
            id=reservation_id,
            user_id=user_id,
            amount=amount,
            balance_before=int(before),
            balance_after=int(after),
            reference_id=reference_id,
        )

    async def commit(
        self,
        reservation: CreditReservation,
        actual_amount: int,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction:
        charged = min(max(actual_amount, 0), reservation.amount)
        template = CreditTransaction(
            user_id=reservation.user_id,
            amount=charged,
            balance_before=0,
            balance_after=0,
            reference_id=reservation.reference_id,
            reason=reason,
            metadata=metadata or {},
        )
        try:
            encoded = await self._commit(
                keys=[
                    self._balance_key(reservation.user_id),
                    self._reservation_key(reservation.id),
                    self._transactions_key(reservation.user_id),
                ],
                args=[charged, template.model_dump_json()],
            )
        except RedisError as e:
            raise LedgerError(f"Failed to commit reservation {reservation.id}: {e}") from e
        if encoded is None:
            raise LedgerError(f"Unknown or settled reservation: {reservation.id}")
        return CreditTransaction.model_validate_json(encoded)

    async def release(self, reservation: CreditReservation) -> None:
        try:
            await self._release(
                keys=[
                    self._balance_key(reservation.user_id),
                    self._reservation_key(reservation.id),
                ],
                args=[],
            )
        except RedisError as e:
            raise LedgerError(f"Failed to release reservation {reservation.id}: {e}") from e

    async def list_transactions(
        self,
        user_id: str,
        limit: int | None = None,
    ) -> list[CreditTransaction]:
        end = (limit - 1) if limit else -1
        try:
            rows = await self._redis.lrange(self._transactions_key(user_id), 0, end)
        except RedisError as e:
            raise LedgerError(f"Failed to list transactions for user {user_id}: {e}") from e
        return [CreditTransaction.model_validate_json(row) for row in rows]


class RedisUsageLog(_RedisBacked, UsageLog):
    """BYOK usage log as one sorted set per user, scored by creation time."""

    def _usage_key(self, user_id: str) -> str:
        return KEY_PATTERN_USAGE.format(prefix=self._prefix, user_id=user_id)

    async def append(self, event: UsageEvent) -> None:
        if not event.is_byok:
            raise KeyStoreError("Only BYOK usage events belong in the usage log")
        try:
            await self._redis.zadd(
                self._usage_key(event.user_id),
                {event.model_dump_json(): event.created_at.timestamp()},
            )
        except RedisError as e:
            raise KeyStoreError(f"Failed to append usage event {event.id}: {e}") from e

    async def list_events(
        self,
        user_id: str,
        since: datetime | None = None,
    ) -> list[UsageEvent]:
        low: float | str = since.timestamp() if since else "-inf"
        try:
            rows = await self._redis.zrangebyscore(self._usage_key(user_id), low, "+inf")
        except RedisError as e:
            raise KeyStoreError(f"Failed to list usage for user {user_id}: {e}") from e
        return [UsageEvent.model_validate_json(row) for row in rows]


class RedisPolicySource(_RedisBacked, PolicySource):
    """Routing policy stored as a hash of flag -> "true"/"false".

    An absent hash means no policy was ever saved; the default policy is
    served in that case.
    """

    def __init__(
        self,
        redis: Redis,
        key_prefix: str = "byok",
        default_policy: RoutingPolicy | None = None,
    ) -> None:
        super().__init__(redis, key_prefix)
        self._default_policy = default_policy or RoutingPolicy()

    @property
    def _policy_key(self) -> str:
        return KEY_PATTERN_POLICY.format(prefix=self._prefix)

    async def load(self) -> RoutingPolicy:
        try:
            data = await self._redis.hgetall(self._policy_key)
        except RedisError as e:
            raise PolicySourceError(f"Failed to load routing policy from Redis: {e}") from e
        if not data:
            return self._default_policy
        flags = {name: value.lower() == "true" for name, value in data.items()}
        unknown = set(flags) - set(RoutingPolicy.model_fields)
        if unknown:
            raise PolicySourceError(f"Unknown routing policy flags in Redis: {sorted(unknown)}")
        return RoutingPolicy(**flags)

    async def save(self, policy: RoutingPolicy) -> None:
        """Store a policy; resolvers pick it up on their next refresh."""
        mapping = {name: "true" if value else "false" for name, value in policy.model_dump().items()}
        try:
            await self._redis.hset(self._policy_key, mapping=mapping)
        except RedisError as e:
            raise PolicySourceError(f"Failed to save routing policy to Redis: {e}") from e
