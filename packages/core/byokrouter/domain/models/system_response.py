"""Provider response, token usage and usage metering models."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from byokrouter.domain.models.provider import Provider


class TokenUsage(BaseModel):
    """Represents token usage for a provider call.

    The total is computed automatically.

    Example:
        ```python
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150
        ```
    """

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)

    @computed_field
    @property
    def total_tokens(self) -> int:
        """Compute total tokens (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


class ProviderResponse(BaseModel):
    """Normalized result of a successful provider call."""

    content: Any = Field(..., description="Text for chat/transcription, vectors for embeddings")
    model: str
    provider: Provider
    usage: TokenUsage = Field(default_factory=TokenUsage)
    estimated_cost_cents: int = Field(default=0, ge=0)
    latency_ms: int = Field(default=0, ge=0)
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)


class UsageMeter:
    """Collects token usage a provider reports while a call is in flight.

    Streaming clients report usage as it is consumed, so that a call
    cancelled midway still leaves a record of what was spent.
    """

    def __init__(self) -> None:
        self._usage = TokenUsage()
        self._reported = False

    def report(self, prompt_tokens: int = 0, completion_tokens: int = 0) -> None:
        """Add usage reported by the provider."""
        self._usage = self._usage + TokenUsage(
            prompt_tokens=prompt_tokens, completion_tokens=completion_tokens
        )
        self._reported = True

    def update_totals(self, prompt_tokens: int, completion_tokens: int) -> None:
        """Replace the running totals with cumulative counts from a stream.

        Streams report usage as counts so far, not as increments.
        """
        self._usage = TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
        self._reported = True

    @property
    def usage(self) -> TokenUsage | None:
        """Usage reported so far, or None if the provider reported nothing."""
        return self._usage if self._reported else None
