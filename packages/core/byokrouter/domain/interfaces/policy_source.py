"""PolicySource interface for the backing routing-policy config store."""

from abc import ABC, abstractmethod

from byokrouter.domain.models.policy import RoutingPolicy


class PolicySourceError(Exception):
    """Raised when the routing policy cannot be loaded."""

    pass


class PolicySource(ABC):
    """Where the routing policy flags live (env, file, Redis, ...)."""

    @abstractmethod
    async def load(self) -> RoutingPolicy:
        """Load the current policy.

        Raises:
            PolicySourceError: If the store is unreachable or holds invalid data.
        """
        pass
