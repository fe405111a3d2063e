"""Routing context and verdict models."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from byokrouter.domain.models.api_key import KeyCandidate
from byokrouter.domain.models.policy import RoutingPolicy
from byokrouter.domain.models.provider import Provider


class KeySource(str, Enum):
    """Which credential source a request runs against."""

    Internal = "internal"
    """Platform key, billed against internal credits."""

    Byok = "byok"
    """The user's own provider key."""

    Error = "error"
    """No usable credential."""


class ReasonCode(str, Enum):
    """Machine-readable reason attached to an Error verdict."""

    ByokRequired = "byok_required"
    """BYOK-only mode is active and the user has no usable key."""

    NoCreditNoByok = "no_credit_no_byok"
    """The user has neither spendable credit nor a usable key."""


class RoutingContext(BaseModel):
    """Per-request inputs to the routing decision.

    Built fresh for every request and never persisted. pinned_provider
    restricts which BYOK keys are usable (e.g. embeddings only run on OpenAI);
    preferred_provider only influences the tie-break between usable keys.
    """

    user_id: str = Field(..., min_length=1)
    has_credits: bool
    byok_keys: tuple[KeyCandidate, ...] = Field(default=())
    policy: RoutingPolicy
    preferred_provider: Provider | None = None
    pinned_provider: Provider | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def usable_keys(self) -> tuple[KeyCandidate, ...]:
        """BYOK keys this request may run on."""
        if self.pinned_provider is None:
            return self.byok_keys
        return tuple(k for k in self.byok_keys if k.provider == self.pinned_provider)

    @property
    def byok_providers(self) -> frozenset[Provider]:
        """Providers with a usable BYOK key for this request."""
        return frozenset(k.provider for k in self.usable_keys)


class RoutingVerdict(BaseModel):
    """Output of the decision engine, consumed once by the dispatcher."""

    source: KeySource
    key_id: str | None = None
    provider: Provider | None = None
    reason: ReasonCode | None = None
    rule: str = Field(..., description="Name of the decision rule that matched")
    explanation: str
    is_fallback: bool = False

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def validate_shape(self) -> "RoutingVerdict":
        """Each source carries exactly the fields it needs."""
        if self.source == KeySource.Byok:
            if self.key_id is None or self.provider is None:
                raise ValueError("Byok verdict requires key_id and provider")
        elif self.key_id is not None:
            raise ValueError(f"{self.source.value} verdict must not carry a key_id")
        if (self.source == KeySource.Error) != (self.reason is not None):
            raise ValueError("reason is set if and only if source is error")
        return self


class SettingsPreview(BaseModel):
    """Read-only snapshot of what routing would do for a user right now."""

    enabled: bool
    policy: RoutingPolicy
    has_credits: bool
    has_byok_keys: bool
    byok_providers: list[Provider]
    verdict: RoutingVerdict
