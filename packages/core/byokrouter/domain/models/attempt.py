"""Attempt and dispatch result models shared by the dispatcher and usage recorder."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.routing import KeySource
from byokrouter.domain.models.system_error import ProviderError
from byokrouter.domain.models.system_response import ProviderResponse, TokenUsage
from byokrouter.domain.models.task import InferenceTask
from byokrouter.domain.models.usage import CreditReservation


class AttemptPhase(str, Enum):
    """Fallback state of a dispatch. Moves Primary -> Fallback at most once."""

    Primary = "primary"
    """First attempt, on the source the routing verdict chose."""

    Fallback = "fallback"
    """Internal-credit attempt after the user's key was rejected."""


class AttemptOutcome(BaseModel):
    """Result of one attempt against one credential, success or failure."""

    user_id: str
    task: InferenceTask
    source: KeySource
    provider: Provider
    phase: AttemptPhase = AttemptPhase.Primary
    key_id: str | None = Field(default=None, description="Set for BYOK attempts")
    reservation: CreditReservation | None = Field(
        default=None,
        description="Credit hold backing an internal attempt",
    )
    response: ProviderResponse | None = None
    usage: TokenUsage | None = Field(
        default=None,
        description="Tokens the provider reported, including partial usage of failed calls",
    )
    error: ProviderError | None = None
    cancelled: bool = False

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def succeeded(self) -> bool:
        return self.response is not None

    @property
    def billable(self) -> bool:
        """True if the attempt produced a result or consumed tokens."""
        return self.succeeded or (self.usage is not None and self.usage.total_tokens > 0)


class DispatchResult(BaseModel):
    """What a dispatched request returns to its caller."""

    response: ProviderResponse
    source: KeySource
    provider: Provider
    key_id: str | None = None
    rule: str
    explanation: str
    fell_back: bool = Field(
        default=False,
        description="True if the user's key was rejected and internal credits were used",
    )
    balance_after: int | None = None


class StreamingDispatch:
    """An opened stream: where it runs and the text deltas still to come.

    Iterate it once. The attempt is recorded when the stream finishes,
    fails or is closed early; call aclose() when abandoning it midway or
    before reading it at all.
    """

    def __init__(
        self,
        deltas: AsyncGenerator[str, None],
        on_abandon: Callable[[], Awaitable[None]],
        source: KeySource,
        provider: Provider,
        rule: str,
        explanation: str,
        key_id: str | None = None,
        fell_back: bool = False,
    ) -> None:
        self._deltas = deltas
        self._on_abandon = on_abandon
        self._started = False
        self._closed = False
        self.source = source
        self.provider = provider
        self.key_id = key_id
        self.rule = rule
        self.explanation = explanation
        self.fell_back = fell_back

    def __aiter__(self) -> "StreamingDispatch":
        return self

    async def __anext__(self) -> str:
        self._started = True
        return await anext(self._deltas)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._started:
            await self._deltas.aclose()
        else:
            # The relay never ran, so it cannot record the attempt itself
            await self._on_abandon()
