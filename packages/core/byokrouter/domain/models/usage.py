"""Usage accounting models for the BYOK usage log and the credit ledger."""

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.task import TaskKind


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UsageEvent(BaseModel):
    """One billable attempt, routed to exactly one ledger.

    byok_key_id is set when the attempt ran on the user's key (BYOK usage
    log); balance_after is set when it ran on internal credit (credit ledger).
    Exactly one of the two is present.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = Field(..., min_length=1)
    provider: Provider
    model: str
    task_kind: TaskKind
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    estimated_cost_cents: int = Field(default=0, ge=0)
    latency_ms: int = Field(default=0, ge=0)
    success: bool = True
    error_message: str | None = None
    request_id: str | None = None
    byok_key_id: str | None = None
    balance_after: int | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def validate_single_ledger(self) -> "UsageEvent":
        """An event belongs to exactly one ledger."""
        if (self.byok_key_id is None) == (self.balance_after is None):
            raise ValueError("UsageEvent needs exactly one of byok_key_id or balance_after")
        return self

    @property
    def is_byok(self) -> bool:
        return self.byok_key_id is not None


class CreditReservation(BaseModel):
    """A hold placed on a user's balance before an internal-key call."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    amount: int = Field(..., gt=0)
    balance_before: int
    balance_after: int
    reference_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class CreditTransaction(BaseModel):
    """A committed debit in the internal credit ledger."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    amount: int = Field(..., ge=0)
    balance_before: int
    balance_after: int
    transaction_type: str = "deduction"
    reference_id: str | None = None
    reason: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class ProviderUsage(BaseModel):
    """Per-provider totals inside a usage summary."""

    requests: int = 0
    tokens: int = 0
    cost_cents: int = 0


class UsageSummary(BaseModel):
    """Aggregated BYOK usage over a trailing window of days."""

    period_days: int = Field(..., ge=1)
    total_requests: int = 0
    total_tokens: int = 0
    estimated_cost_cents: int = 0
    by_provider: dict[str, ProviderUsage] = Field(default_factory=dict)

    @computed_field
    @property
    def estimated_cost_dollars(self) -> str:
        """Cost formatted in dollars with two decimals."""
        return str((Decimal(self.estimated_cost_cents) / 100).quantize(Decimal("0.01")))
