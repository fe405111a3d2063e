"""RoutingPolicy model."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RoutingPolicy(BaseModel):
    """The three flags that select a key-source routing mode.

    byok_only_mode takes precedence over the other two flags when set.
    Instances are immutable; a new policy replaces the old one wholesale.

    Example:
        ```python
        policy = RoutingPolicy(byok_enabled=True)
        assert policy.describe() == "BYOK-first mode"
        ```
    """

    byok_enabled: bool = Field(
        default=False,
        description="Prefer the user's own key when one is configured",
    )
    byok_uses_internal_credits: bool = Field(
        default=False,
        description="Credit-first: spend internal credits, use BYOK when they run out",
    )
    byok_only_mode: bool = Field(
        default=False,
        description="Requests may only run on the user's own keys",
    )

    model_config = ConfigDict(frozen=True)

    def describe(self) -> str:
        """Human-readable name of the active mode."""
        if self.byok_only_mode:
            return "BYOK-only mode"
        if self.byok_uses_internal_credits:
            return "Credit-first mode"
        if self.byok_enabled:
            return "BYOK-first mode"
        return "Internal credits mode"

    def as_flags(self) -> dict[str, Any]:
        """Return the flags keyed by their external (camelCase) names."""
        return {
            "byokEnabled": self.byok_enabled,
            "byokUsesInternalCredits": self.byok_uses_internal_credits,
            "byokOnlyMode": self.byok_only_mode,
        }
