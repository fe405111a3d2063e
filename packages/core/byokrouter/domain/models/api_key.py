"""ApiKeyRecord data model and related key views."""

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from byokrouter.domain.models.provider import Provider


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ApiKeyRecord(BaseModel):
    """A user's stored API key for one provider.

    At most one active record exists per (user_id, provider). The secret is
    stored encrypted and must never be logged or returned to API callers;
    use public_view() for anything that leaves the process.
    """

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Stable identifier of the record (not the secret)",
        min_length=1,
    )
    user_id: str = Field(..., description="Owner of the key", min_length=1)
    provider: Provider = Field(..., description="Provider this key authenticates against")
    encrypted_secret: str = Field(
        ...,
        description="Fernet token holding the provider secret",
        min_length=1,
    )
    key_hint: str = Field(..., description="Display hint, e.g. '...abc1'")
    is_active: bool = Field(default=True)
    is_valid: bool = Field(default=True)
    last_error: str | None = Field(default=None)
    consecutive_auth_failures: int = Field(default=0, ge=0)
    total_requests: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    last_used_at: datetime | None = Field(default=None)
    validated_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(
        frozen=False,
        validate_assignment=True,
        str_strip_whitespace=True,
    )

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        """Validate user ID format."""
        if len(v) > 255:
            raise ValueError("User ID must be 255 characters or less")
        return v

    @property
    def is_usable(self) -> bool:
        """Whether the routing engine may offer this key."""
        return self.is_active and self.is_valid

    def public_view(self) -> dict[str, Any]:
        """Return the record without its secret."""
        return self.model_dump(exclude={"encrypted_secret"})

    def __repr__(self) -> str:
        """String representation that never exposes the secret."""
        return (
            f"ApiKeyRecord(id={self.id!r}, user_id={self.user_id!r}, "
            f"provider={self.provider.value}, key_hint={self.key_hint!r}, "
            f"is_valid={self.is_valid})"
        )


class KeyCandidate(BaseModel):
    """Routing-relevant view of one usable BYOK key."""

    key_id: str
    provider: Provider
    validated_at: datetime | None = None
    last_used_at: datetime | None = None

    model_config = ConfigDict(frozen=True)


class KeyValidationResult(BaseModel):
    """Outcome of a live validation call against a provider."""

    provider: Provider
    valid: bool
    error: str | None = Field(
        default=None,
        description="Provider's rejection reason when valid is False",
    )
    checked_at: datetime = Field(default_factory=_utcnow)


def make_key_hint(secret: str) -> str:
    """Build the display hint (last 4 characters) for a secret."""
    return f"...{secret.strip()[-4:]}"
