"""Policy sources backed by static values, environment settings or files."""

import asyncio
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from byokrouter.domain.interfaces.policy_source import PolicySource, PolicySourceError
from byokrouter.domain.models.policy import RoutingPolicy
from byokrouter.infrastructure.config.file_loader import (
    ConfigurationError,
    PolicyFileLoader,
)
from byokrouter.infrastructure.config.settings import ByokSettings


class StaticPolicySource(PolicySource):
    """Serves a fixed policy; set() swaps it (tests, embedded use)."""

    def __init__(self, policy: RoutingPolicy | None = None) -> None:
        self._policy = policy or RoutingPolicy()

    def set(self, policy: RoutingPolicy) -> None:
        self._policy = policy

    async def load(self) -> RoutingPolicy:
        return self._policy


class SettingsPolicySource(PolicySource):
    """Re-reads the BYOKROUTER_* flag variables on every load."""

    async def load(self) -> RoutingPolicy:
        try:
            return ByokSettings().default_policy
        except PydanticValidationError as e:
            raise PolicySourceError(f"Invalid routing policy settings: {e}") from e


class FilePolicySource(PolicySource):
    """Reads the policy from a YAML or JSON file.

    File I/O runs in a worker thread so that slow disks do not stall the
    event loop.
    """

    def __init__(self, path: str | Path) -> None:
        self._loader = PolicyFileLoader(path)

    async def load(self) -> RoutingPolicy:
        try:
            return await asyncio.to_thread(self._loader.load_policy)
        except ConfigurationError as e:
            raise PolicySourceError(f"Failed to load policy from {self._loader.path}: {e}") from e
