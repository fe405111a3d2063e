"""PolicyResolver component: TTL-cached routing policy."""

import asyncio
import time
from collections.abc import Callable

from byokrouter.domain.interfaces.observability_manager import (
    ObservabilityManager,
    emit_safely,
)
from byokrouter.domain.interfaces.policy_source import PolicySource, PolicySourceError
from byokrouter.domain.models.policy import RoutingPolicy


class PolicyResolver:
    """Resolves the routing policy flags with a TTL cache.

    The first call loads synchronously. After the TTL expires the cached
    policy keeps being served while a single background task reloads it
    (stale-while-revalidate). When the source fails, the last policy that
    loaded successfully is served, or the default policy if none ever did.

    Example:
        ```python
        resolver = PolicyResolver(SettingsPolicySource(), observability, ttl_seconds=120)
        policy = await resolver.current_policy()
        ```
    """

    def __init__(
        self,
        source: PolicySource,
        observability_manager: ObservabilityManager,
        ttl_seconds: float = 120.0,
        default_policy: RoutingPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize PolicyResolver.

        Args:
            source: Where the policy flags are loaded from.
            observability_manager: ObservabilityManager for events and logging.
            ttl_seconds: How long a loaded policy is fresh.
            default_policy: Served when nothing was ever loaded. All flags
                off if None.
            clock: Monotonic clock (injectable for tests).
        """
        self._source = source
        self._observability = observability_manager
        self._ttl = ttl_seconds
        self._default_policy = default_policy or RoutingPolicy()
        self._clock = clock

        self._policy: RoutingPolicy | None = None
        self._last_good: RoutingPolicy | None = None
        self._loaded_at: float | None = None
        self._load_lock = asyncio.Lock()
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def cached_policy(self) -> RoutingPolicy | None:
        """The policy currently held in cache, if any."""
        return self._policy

    def _is_fresh(self) -> bool:
        return self._loaded_at is not None and self._clock() - self._loaded_at < self._ttl

    async def current_policy(self) -> RoutingPolicy:
        """Return the policy to route the current request with.

        Never raises: source failures fall back to the last-known-good or
        default policy.
        """
        if self._policy is None:
            async with self._load_lock:
                if self._policy is None:
                    await self._reload_or_fallback()
            return self._policy or self._default_policy

        if not self._is_fresh():
            self._schedule_refresh()
        return self._policy

    async def force_refresh(self) -> RoutingPolicy:
        """Reload the policy immediately.

        Raises:
            PolicySourceError: If the source cannot be loaded. The cached
                policy is left untouched.
        """
        async with self._load_lock:
            policy = await self._source.load()
            await self._store(policy, trigger="manual")
            return policy

    def invalidate(self) -> None:
        """Mark the cached policy stale so the next call triggers a refresh."""
        self._loaded_at = None

    async def close(self) -> None:
        """Cancel a background refresh still in flight."""
        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._refresh_task = None

    def _schedule_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._background_refresh())

    async def _background_refresh(self) -> None:
        async with self._load_lock:
            if self._is_fresh():
                return
            await self._reload_or_fallback()

    async def _reload_or_fallback(self) -> None:
        try:
            policy = await self._source.load()
        except PolicySourceError as e:
            served = "last_known_good" if self._last_good is not None else "default"
            self._policy = self._last_good or self._default_policy
            # Retry on the next TTL window rather than on every request
            self._loaded_at = self._clock()
            await self._observability.log(
                level="WARNING",
                message=f"Routing policy source failed, serving {served} policy: {e}",
                context={"policy": self._policy.describe()},
            )
            return
        await self._store(policy, trigger="ttl")

    async def _store(self, policy: RoutingPolicy, trigger: str) -> None:
        previous = self._last_good
        self._policy = policy
        self._last_good = policy
        self._loaded_at = self._clock()
        if previous != policy:
            await emit_safely(
                self._observability,
                "policy_refreshed",
                {
                    "trigger": trigger,
                    "mode": policy.describe(),
                    **policy.as_flags(),
                },
            )
