"""UsageLog interface for the BYOK usage table."""

from abc import ABC, abstractmethod
from datetime import datetime

from byokrouter.domain.models.usage import UsageEvent


class UsageLog(ABC):
    """Append-only log of requests that ran on users' own keys."""

    @abstractmethod
    async def append(self, event: UsageEvent) -> None:
        """Persist one usage event.

        Raises:
            KeyStoreError: If the write fails.
        """
        pass

    @abstractmethod
    async def list_events(
        self,
        user_id: str,
        since: datetime | None = None,
    ) -> list[UsageEvent]:
        """Return the user's events created at or after `since`, oldest first.

        Raises:
            KeyStoreError: If the read fails.
        """
        pass
