"""UsageRecorder component: writes each dispatch outcome to exactly one ledger."""

from datetime import UTC, datetime, timedelta

from byokrouter.domain.components.credit_pricing import CreditPricing
from byokrouter.domain.components.key_store import KeyStore
from byokrouter.domain.interfaces.credit_ledger import CreditLedger
from byokrouter.domain.interfaces.observability_manager import (
    ObservabilityManager,
    emit_safely,
)
from byokrouter.domain.interfaces.usage_log import UsageLog
from byokrouter.domain.models.attempt import AttemptOutcome
from byokrouter.domain.models.routing import KeySource
from byokrouter.domain.models.system_error import ErrorKind
from byokrouter.domain.models.system_response import TokenUsage
from byokrouter.domain.models.usage import ProviderUsage, UsageEvent, UsageSummary
from byokrouter.infrastructure.utils.validation import validate_usage_days


class UsageRecorder:
    """Routes the final outcome of a dispatch to the BYOK usage log or the credit ledger.

    BYOK attempts are appended to the usage log and bump the key's counters;
    internal attempts settle their credit reservation, which writes the
    credit transaction. An outcome is never written to both, and outcomes
    with nothing billable release their reservation instead.
    """

    def __init__(
        self,
        key_store: KeyStore,
        credit_ledger: CreditLedger,
        usage_log: UsageLog,
        observability_manager: ObservabilityManager,
        pricing: CreditPricing,
    ) -> None:
        self._key_store = key_store
        self._ledger = credit_ledger
        self._usage_log = usage_log
        self._observability = observability_manager
        self._pricing = pricing

    async def record(self, outcome: AttemptOutcome) -> UsageEvent | None:
        """Record the final attempt of a dispatch.

        Returns:
            The usage event written, or None if nothing was billable.

        Raises:
            KeyStoreError: If the BYOK usage write fails.
            LedgerError: If settling the credit reservation fails.
        """
        if outcome.source == KeySource.Byok:
            return await self._record_byok(outcome)
        return await self._record_internal(outcome)

    async def note_failed_attempt(self, outcome: AttemptOutcome) -> None:
        """Report a rejected BYOK attempt that was followed by a fallback.

        Diagnostic only: the fallback's own outcome is what gets billed.
        """
        await emit_safely(
            self._observability,
            "byok_attempt_failed",
            {
                "user_id": outcome.user_id,
                "key_id": outcome.key_id,
                "provider": outcome.provider.value,
                "model": outcome.task.model,
                "error": outcome.error.message if outcome.error else None,
                "error_kind": outcome.error.kind.value if outcome.error else None,
            },
            metadata={"request_id": outcome.task.request_id},
        )

    async def _record_byok(self, outcome: AttemptOutcome) -> UsageEvent | None:
        key_id = outcome.key_id
        if key_id is None:
            raise ValueError("BYOK outcome without a key_id")
        error = outcome.error

        if not outcome.billable:
            if error is not None and error.kind == ErrorKind.Auth:
                await self._key_store.record_usage(
                    key_id, tokens=0, cost_cents=0, error=error.message, auth_failure=True
                )
            elif error is not None:
                await self._key_store.record_error(key_id, error.message)
            return None

        event = self._build_event(outcome, byok_key_id=key_id)
        await self._usage_log.append(event)
        await self._key_store.record_usage(
            key_id,
            tokens=event.total_tokens,
            cost_cents=event.estimated_cost_cents,
            error=event.error_message,
        )
        await self._emit_recorded(event)
        return event

    async def _record_internal(self, outcome: AttemptOutcome) -> UsageEvent | None:
        reservation = outcome.reservation
        if reservation is None:
            return None
        if not outcome.billable:
            await self._ledger.release(reservation)
            return None

        usage = self._usage_of(outcome)
        charge = self._pricing.actual(outcome.task, usage, reservation.amount)
        transaction = await self._ledger.commit(
            reservation,
            actual_amount=charge,
            reason=f"{outcome.task.kind.value}:{outcome.task.model}",
            metadata={
                "provider": outcome.provider.value,
                "model": outcome.task.model,
                "request_id": outcome.task.request_id,
                "phase": outcome.phase.value,
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens,
                "success": outcome.succeeded,
            },
        )
        event = self._build_event(outcome, balance_after=transaction.balance_after)
        await self._emit_recorded(event, credits_charged=transaction.amount)
        return event

    @staticmethod
    def _usage_of(outcome: AttemptOutcome) -> TokenUsage:
        if outcome.response is not None:
            return outcome.response.usage
        return outcome.usage or TokenUsage()

    def _build_event(
        self,
        outcome: AttemptOutcome,
        byok_key_id: str | None = None,
        balance_after: int | None = None,
    ) -> UsageEvent:
        usage = self._usage_of(outcome)
        response = outcome.response
        if outcome.cancelled:
            error_message = "Request cancelled"
        elif outcome.error is not None:
            error_message = outcome.error.message
        else:
            error_message = None
        return UsageEvent(
            user_id=outcome.user_id,
            provider=outcome.provider,
            model=response.model if response else outcome.task.model,
            task_kind=outcome.task.kind,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            estimated_cost_cents=response.estimated_cost_cents if response else 0,
            latency_ms=response.latency_ms if response else 0,
            success=outcome.succeeded,
            error_message=error_message,
            request_id=outcome.task.request_id,
            byok_key_id=byok_key_id,
            balance_after=balance_after,
        )

    async def _emit_recorded(self, event: UsageEvent, credits_charged: int | None = None) -> None:
        payload = event.model_dump(mode="json", exclude_none=True)
        payload["ledger"] = "byok" if event.is_byok else "credits"
        if credits_charged is not None:
            payload["credits_charged"] = credits_charged
        await emit_safely(self._observability, "usage_recorded", payload)

    async def usage_summary(self, user_id: str, days: int = 30) -> UsageSummary:
        """Aggregate the user's BYOK usage over the trailing `days` days.

        Raises:
            ValidationError: If days is outside 1..365.
        """
        days = validate_usage_days(days)
        since = datetime.now(UTC) - timedelta(days=days)
        events = await self._usage_log.list_events(user_id, since=since)

        by_provider: dict[str, ProviderUsage] = {}
        for event in events:
            totals = by_provider.setdefault(event.provider.value, ProviderUsage())
            totals.requests += 1
            totals.tokens += event.total_tokens
            totals.cost_cents += event.estimated_cost_cents

        return UsageSummary(
            period_days=days,
            total_requests=len(events),
            total_tokens=sum(e.total_tokens for e in events),
            estimated_cost_cents=sum(e.estimated_cost_cents for e in events),
            by_provider=by_provider,
        )
