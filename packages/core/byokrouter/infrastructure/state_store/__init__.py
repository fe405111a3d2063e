"""Storage backends for keys, credits, usage and policy."""

from byokrouter.infrastructure.state_store.memory_store import (
    InMemoryCreditLedger,
    InMemoryKeyRepository,
    InMemoryUsageLog,
)
from byokrouter.infrastructure.state_store.redis_store import (
    RedisCreditLedger,
    RedisKeyRepository,
    RedisPolicySource,
    RedisUsageLog,
    create_redis_client,
)

__all__ = [
    "InMemoryCreditLedger",
    "InMemoryKeyRepository",
    "InMemoryUsageLog",
    "RedisCreditLedger",
    "RedisKeyRepository",
    "RedisPolicySource",
    "RedisUsageLog",
    "create_redis_client",
]
