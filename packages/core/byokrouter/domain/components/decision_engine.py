"""Routing decision engine: which credential source a request runs on.

decide() is a pure function of its RoutingContext. The rules live in
DECISION_TABLE, evaluated top to bottom; the first row whose predicate
holds produces the verdict.

Example:
    ```python
    context = RoutingContext(
        user_id="user-1",
        has_credits=False,
        byok_keys=(KeyCandidate(key_id="k1", provider=Provider.OpenAI),),
        policy=RoutingPolicy(byok_uses_internal_credits=True),
    )
    verdict = decide(context)
    assert verdict.rule == "credit_first_byok_fallback"
    ```
"""

from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from byokrouter.domain.models.api_key import KeyCandidate
from byokrouter.domain.models.policy import RoutingPolicy
from byokrouter.domain.models.provider import get_provider_info
from byokrouter.domain.models.routing import (
    KeySource,
    ReasonCode,
    RoutingContext,
    RoutingVerdict,
    SettingsPreview,
)
from byokrouter.domain.models.system_error import PaymentRequiredError

BYOK_ONLY_SUGGESTION = "Please configure your own API keys in Settings > API Keys"
DEFAULT_SUGGESTION = (
    "Please upgrade your plan, purchase more credits, or configure your own API keys (BYOK)"
)


class DecisionRule(BaseModel):
    """One row of the decision table.

    explanation may reference {provider} (display name of the selected
    provider) and {mode} (the policy's mode name).
    """

    name: str
    when: Callable[[RoutingContext], bool]
    source: KeySource
    explanation: str
    reason: ReasonCode | None = None
    fallback: bool = False

    model_config = ConfigDict(frozen=True)


def _has_keys(ctx: RoutingContext) -> bool:
    return bool(ctx.byok_providers)


DECISION_TABLE: tuple[DecisionRule, ...] = (
    DecisionRule(
        name="byok_only_with_keys",
        when=lambda ctx: ctx.policy.byok_only_mode and _has_keys(ctx),
        source=KeySource.Byok,
        explanation="BYOK-only mode: using your {provider} API key",
    ),
    DecisionRule(
        name="byok_only_without_keys",
        when=lambda ctx: ctx.policy.byok_only_mode,
        source=KeySource.Error,
        reason=ReasonCode.ByokRequired,
        explanation=(
            "BYOK-only mode enabled but you have no valid API keys configured. "
            "Please add your API keys in Settings."
        ),
    ),
    DecisionRule(
        name="credit_first_with_credit",
        when=lambda ctx: ctx.policy.byok_uses_internal_credits and ctx.has_credits,
        source=KeySource.Internal,
        explanation="Credit-first mode: using internal credits",
    ),
    DecisionRule(
        name="credit_first_byok_fallback",
        when=lambda ctx: ctx.policy.byok_uses_internal_credits and _has_keys(ctx),
        source=KeySource.Byok,
        fallback=True,
        explanation="Credit-first mode: out of credits, using BYOK fallback",
    ),
    DecisionRule(
        name="credit_first_exhausted",
        when=lambda ctx: ctx.policy.byok_uses_internal_credits,
        source=KeySource.Error,
        reason=ReasonCode.NoCreditNoByok,
        explanation=(
            "Credit-first mode: no credits remaining and no valid API keys configured. "
            "Please purchase credits or add your API keys."
        ),
    ),
    DecisionRule(
        name="byok_first",
        when=lambda ctx: ctx.policy.byok_enabled and _has_keys(ctx),
        source=KeySource.Byok,
        explanation="BYOK-first mode: using your {provider} API key",
    ),
    DecisionRule(
        name="internal_fallback",
        when=lambda ctx: ctx.has_credits,
        source=KeySource.Internal,
        fallback=True,
        explanation="{mode}: using internal credits",
    ),
    DecisionRule(
        name="nothing_available",
        when=lambda ctx: True,
        source=KeySource.Error,
        reason=ReasonCode.NoCreditNoByok,
        explanation=(
            "{mode}: no valid API keys configured and no credits remaining. "
            "Please add your API keys or purchase credits."
        ),
    ),
)


def _recency(value: datetime | None) -> float:
    # Larger is more recent; missing timestamps sort last
    return value.timestamp() if value is not None else float("-inf")


def select_byok_key(context: RoutingContext) -> KeyCandidate | None:
    """Pick the key a BYOK verdict runs on.

    Order: the preferred provider first, then the most recently validated
    key, then the most recently used, then provider name.
    """
    candidates = context.usable_keys
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda k: (
            0 if k.provider == context.preferred_provider else 1,
            -_recency(k.validated_at),
            -_recency(k.last_used_at),
            k.provider.value,
        ),
    )


def decide(context: RoutingContext) -> RoutingVerdict:
    """Return the routing verdict for a request. Deterministic, no side effects."""
    for rule in DECISION_TABLE:
        if not rule.when(context):
            continue
        key_id = None
        provider = None
        if rule.source == KeySource.Byok:
            candidate = select_byok_key(context)
            if candidate is None:
                continue
            key_id = candidate.key_id
            provider = candidate.provider
        return RoutingVerdict(
            source=rule.source,
            key_id=key_id,
            provider=provider,
            reason=rule.reason,
            rule=rule.name,
            explanation=rule.explanation.format(
                provider=get_provider_info(provider).name if provider else "",
                mode=context.policy.describe(),
            ),
            is_fallback=rule.fallback,
        )
    # nothing_available always matches
    raise AssertionError("decision table has no catch-all row")


def explain_policy(policy: RoutingPolicy) -> str:
    """Describe the active mode and which flags select it."""
    active = [name for name, enabled in policy.as_flags().items() if enabled]
    flags = ", ".join(active) if active else "no BYOK flags set"
    return f"{policy.describe()} ({flags})"


def build_payment_required(context: RoutingContext, verdict: RoutingVerdict) -> PaymentRequiredError:
    """Turn an Error verdict into the 402 raised to the caller."""
    byok_only = context.policy.byok_only_mode
    providers = sorted(p.value for p in context.byok_providers)
    return PaymentRequiredError(
        reason=verdict.reason or ReasonCode.NoCreditNoByok,
        message=verdict.explanation,
        suggestion=BYOK_ONLY_SUGGESTION if byok_only else DEFAULT_SUGGESTION,
        data={
            "byokOnlyMode": byok_only,
            "hasCredits": context.has_credits,
            "hasByok": bool(providers),
            "byokProviders": providers,
            "policy": explain_policy(context.policy),
        },
    )


def preview(context: RoutingContext, enabled: bool = True) -> SettingsPreview:
    """Read-only snapshot of what routing would do for this context."""
    return SettingsPreview(
        enabled=enabled,
        policy=context.policy,
        has_credits=context.has_credits,
        has_byok_keys=bool(context.byok_keys),
        byok_providers=sorted(context.byok_providers, key=lambda p: p.value),
        verdict=decide(context),
    )
