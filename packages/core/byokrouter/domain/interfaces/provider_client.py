"""ProviderClient interface: the capability the dispatcher is polymorphic over."""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator

from byokrouter.domain.models.api_key import KeyValidationResult
from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.system_error import ErrorKind, ProviderError
from byokrouter.domain.models.system_response import ProviderResponse, TokenUsage, UsageMeter
from byokrouter.domain.models.task import InferenceTask, TaskKind


class ProviderClient(ABC):
    """Abstract client for one inference provider.

    The credential is passed per call, so one client serves both the
    platform key and every user's own key.

    Example:
        ```python
        client: ProviderClient = OpenAIClient()
        response = await client.call("sk-...", task)
        ```
    """

    provider: Provider
    """Provider this client talks to."""

    @abstractmethod
    def supports(self, kind: TaskKind) -> bool:
        """Whether the provider can run tasks of this kind."""
        pass

    @abstractmethod
    async def call(
        self,
        credential: str,
        task: InferenceTask,
        meter: UsageMeter | None = None,
    ) -> ProviderResponse:
        """Run a task with the given credential.

        Args:
            credential: Plain-text provider API key.
            task: The work to perform.
            meter: Optional meter the client reports consumed tokens to as
                soon as the provider reports them.

        Returns:
            Normalized provider response.

        Raises:
            ProviderError: With kind auth, transient or other.
        """
        pass

    def stream(
        self,
        credential: str,
        task: InferenceTask,
        meter: UsageMeter,
    ) -> AsyncGenerator[str, None]:
        """Run a chat task as a stream of text deltas.

        The meter is kept current with the cumulative usage consumed so far,
        so a stream closed midway still leaves a record of what was spent.
        Errors raised before the first delta may be retried; errors after
        it end the stream.

        Raises:
            ProviderError: With kind auth, transient or other.
        """
        raise ProviderError(
            kind=ErrorKind.Other,
            message=f"{self.provider.value} does not support streaming",
            provider=self.provider,
            provider_code="unsupported_task",
        )

    def estimate_cost_cents(self, model: str, usage: TokenUsage) -> int:
        """Provider cost of a call in US cents."""
        return 0

    @abstractmethod
    async def validate_key(self, secret: str) -> KeyValidationResult:
        """Check a secret against the provider without side effects.

        Returns:
            A result carrying the provider's rejection reason when invalid.

        Raises:
            ProviderError: If the provider could not be reached to decide.
        """
        pass

    async def close(self) -> None:
        """Release network resources held by the client."""
        return None
