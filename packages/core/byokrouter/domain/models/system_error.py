"""Provider and routing error types."""

from __future__ import annotations

from enum import Enum
from typing import Any

from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.routing import ReasonCode
from byokrouter.domain.models.system_response import TokenUsage


class ErrorKind(str, Enum):
    """How the dispatcher reacts to a provider failure."""

    Auth = "auth"
    """The credential itself was rejected (401/403)."""

    Transient = "transient"
    """Timeouts, 429, 5xx and network failures; retried on the same credential."""

    Other = "other"
    """Anything else (bad request, unsupported task); surfaced as is."""


class ProviderError(Exception):
    """Standardized error raised by provider clients.

    Example:
        ```python
        raise ProviderError(
            kind=ErrorKind.Transient,
            message="Rate limit exceeded",
            provider=Provider.OpenAI,
            status_code=429,
            retry_after=2,
        )
        ```
    """

    def __init__(
        self,
        kind: ErrorKind | str,
        message: str,
        provider: Provider | None = None,
        status_code: int | None = None,
        provider_code: str | None = None,
        retry_after: float | None = None,
        partial_usage: TokenUsage | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize ProviderError.

        Args:
            kind: Error kind (ErrorKind enum or string).
            message: Human-readable error message.
            provider: Provider that produced the error.
            status_code: HTTP status returned by the provider, if any.
            provider_code: Original provider error code if available.
            retry_after: Seconds the provider asked us to wait (Retry-After).
            partial_usage: Tokens the provider reports as consumed before failing.
            details: Additional error details.
        """
        self.kind = ErrorKind(kind) if isinstance(kind, str) else kind
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.provider_code = provider_code
        self.retry_after = retry_after
        self.partial_usage = partial_usage
        self.details = details or {}
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.Transient

    def __repr__(self) -> str:
        return (
            f"ProviderError(kind={self.kind.value}, message={self.message!r}, "
            f"status_code={self.status_code})"
        )

    def __str__(self) -> str:
        return self.message


class PaymentRequiredError(Exception):
    """No usable credential for the request (HTTP 402).

    Carries the machine-readable reason, an explanation naming the active
    policy and the user's credit/key state, and a self-service suggestion.
    """

    def __init__(
        self,
        reason: ReasonCode,
        message: str,
        suggestion: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.reason = reason
        self.message = message
        self.suggestion = suggestion
        self.data = data or {}
        super().__init__(self.message)

    @property
    def title(self) -> str:
        """Short error title used in HTTP bodies."""
        if self.reason == ReasonCode.ByokRequired:
            return "BYOK Required"
        return "Insufficient Credits"

    def to_dict(self) -> dict[str, Any]:
        """HTTP 402 body."""
        return {
            "success": False,
            "error": self.title,
            "code": self.reason.value,
            "message": self.message,
            "data": {**self.data, "suggestion": self.suggestion},
        }
