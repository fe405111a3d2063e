"""RequestDispatcher component: runs a task on the credential routing selects."""

import asyncio
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import TypeVar

from byokrouter.domain.components.credit_ledger_reader import CreditLedgerReader
from byokrouter.domain.components.credit_pricing import CreditPricing
from byokrouter.domain.components.decision_engine import build_payment_required, decide
from byokrouter.domain.components.key_store import KeyHandle, KeyStore
from byokrouter.domain.components.policy_resolver import PolicyResolver
from byokrouter.domain.components.usage_recorder import UsageRecorder
from byokrouter.domain.interfaces.credit_ledger import CreditLedger, InsufficientCreditError
from byokrouter.domain.interfaces.observability_manager import (
    ObservabilityManager,
    emit_safely,
)
from byokrouter.domain.interfaces.provider_client import ProviderClient
from byokrouter.domain.models.attempt import (
    AttemptOutcome,
    AttemptPhase,
    DispatchResult,
    StreamingDispatch,
)
from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.routing import KeySource, RoutingContext, RoutingVerdict
from byokrouter.domain.models.system_error import ErrorKind, ProviderError
from byokrouter.domain.models.system_response import ProviderResponse, TokenUsage, UsageMeter
from byokrouter.domain.models.task import InferenceTask
from byokrouter.domain.models.usage import CreditReservation
from byokrouter.infrastructure.utils.encryption import EncryptionError

# Platform-key providers tried, in order, when a task names no usable preference
_INTERNAL_PROVIDER_ORDER: tuple[Provider, ...] = (Provider.OpenAI, Provider.Anthropic)

_T = TypeVar("_T")


class RequestDispatcher:
    """Executes inference tasks against a user key or the platform key.

    One call to execute() builds the routing context, asks the decision
    engine for a verdict, runs the provider call with retries on transient
    failures, falls back from a rejected user key to internal credits at
    most once, and hands the final attempt to the usage recorder exactly
    once.
    """

    def __init__(
        self,
        key_store: KeyStore,
        ledger_reader: CreditLedgerReader,
        credit_ledger: CreditLedger,
        policy_resolver: PolicyResolver,
        usage_recorder: UsageRecorder,
        provider_clients: dict[Provider, ProviderClient],
        platform_credentials: dict[Provider, str],
        observability_manager: ObservabilityManager,
        pricing: CreditPricing,
        retry_max_attempts: int = 3,
        retry_base_delay_seconds: float = 0.25,
        retry_max_delay_seconds: float = 4.0,
        provider_timeout_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize RequestDispatcher with dependencies.

        Args:
            key_store: Source of the user's usable keys.
            ledger_reader: Answers whether the user has spendable credit.
            credit_ledger: Ledger that internal-credit reservations are made on.
            policy_resolver: Supplies the cached routing policy.
            usage_recorder: Records the final attempt of each dispatch.
            provider_clients: Clients by provider.
            platform_credentials: Platform API keys for the internal path.
            observability_manager: ObservabilityManager for events and logging.
            pricing: Credit pricing for reservations.
            retry_max_attempts: Attempts per credential for transient failures.
            retry_base_delay_seconds: First backoff delay; doubled per retry.
            retry_max_delay_seconds: Backoff cap.
            provider_timeout_seconds: Per-call timeout unless the task sets one.
            sleep: Sleep function used for backoff (injectable for tests).
        """
        self._key_store = key_store
        self._ledger_reader = ledger_reader
        self._credit_ledger = credit_ledger
        self._policy_resolver = policy_resolver
        self._recorder = usage_recorder
        self._clients = provider_clients
        self._platform_credentials = platform_credentials
        self._observability = observability_manager
        self._pricing = pricing
        self._max_attempts = retry_max_attempts
        self._base_delay = retry_base_delay_seconds
        self._max_delay = retry_max_delay_seconds
        self._timeout = provider_timeout_seconds
        self._sleep = sleep

    async def build_context(
        self,
        user_id: str,
        task: InferenceTask | None = None,
    ) -> tuple[RoutingContext, dict[Provider, KeyHandle]]:
        """Read credit, keys and policy concurrently into a RoutingContext."""
        has_credits, handles, policy = await asyncio.gather(
            self._ledger_reader.has_spendable_credit(user_id),
            self._key_store.get_active_keys_by_provider(user_id),
            self._policy_resolver.current_policy(),
        )
        context = RoutingContext(
            user_id=user_id,
            has_credits=has_credits,
            byok_keys=tuple(handle.to_candidate() for handle in handles.values()),
            policy=policy,
            preferred_provider=task.resolved_preferred_provider() if task else None,
            pinned_provider=task.resolved_pinned_provider() if task else None,
        )
        return context, handles

    async def execute(self, user_id: str, task: InferenceTask) -> DispatchResult:
        """Route and run one task.

        Args:
            user_id: Caller identity.
            task: The work to perform.

        Returns:
            The provider response with the source it ran on.

        Raises:
            PaymentRequiredError: If there is no usable credential. No
                provider call is made and nothing is recorded.
            ProviderError: If the final attempt failed (transient after
                exhausted retries, auth without fallback, or other).
        """
        context, verdict, handles, reservation = await self._route(user_id, task)

        outcome, credential = self._primary_attempt(user_id, task, verdict, handles, reservation)
        if credential is not None:
            await self._run(outcome, credential)

        fell_back = False
        if self._should_fall_back(context, outcome):
            fallback_reservation = await self._prepare_fallback(user_id, task, outcome)
            if fallback_reservation is not None:
                outcome, credential = self._internal_attempt(
                    user_id, task, fallback_reservation, AttemptPhase.Fallback
                )
                if credential is not None:
                    await self._run(outcome, credential)
                fell_back = True

        event = await self._recorder.record(outcome)

        if outcome.response is None:
            raise self._final_error(outcome)

        rule, explanation = self._explain(verdict, fell_back)
        return DispatchResult(
            response=outcome.response,
            source=outcome.source,
            provider=outcome.provider,
            key_id=outcome.key_id,
            rule=rule,
            explanation=explanation,
            fell_back=fell_back,
            balance_after=event.balance_after if event is not None else None,
        )

    async def open_stream(self, user_id: str, task: InferenceTask) -> StreamingDispatch:
        """Route a chat task and start streaming it.

        Retries and the single fallback to internal credits apply until the
        first delta arrives; after that a failure ends the stream. The final
        attempt is recorded once, with the usage consumed so far, when the
        stream finishes, fails or is closed.

        Raises:
            PaymentRequiredError: If there is no usable credential.
            ProviderError: If the stream could not be started.
        """
        context, verdict, handles, reservation = await self._route(user_id, task)

        meter = UsageMeter()
        outcome, credential = self._primary_attempt(user_id, task, verdict, handles, reservation)
        opened = await self._start_stream(outcome, credential, meter) if credential else None

        fell_back = False
        if opened is None and self._should_fall_back(context, outcome):
            fallback_reservation = await self._prepare_fallback(user_id, task, outcome)
            if fallback_reservation is not None:
                meter = UsageMeter()
                outcome, credential = self._internal_attempt(
                    user_id, task, fallback_reservation, AttemptPhase.Fallback
                )
                if credential is not None:
                    opened = await self._start_stream(outcome, credential, meter)
                fell_back = True

        if opened is None:
            await self._recorder.record(outcome)
            raise self._final_error(outcome)

        deltas, first = opened
        rule, explanation = self._explain(verdict, fell_back)
        return StreamingDispatch(
            self._relay(outcome, deltas, first, meter),
            lambda: self._abandon(outcome, deltas, meter),
            source=outcome.source,
            provider=outcome.provider,
            key_id=outcome.key_id,
            rule=rule,
            explanation=explanation,
            fell_back=fell_back,
        )

    async def _route(
        self,
        user_id: str,
        task: InferenceTask,
    ) -> tuple[RoutingContext, RoutingVerdict, dict[Provider, KeyHandle], CreditReservation | None]:
        """Decide where a task runs, holding credit first when it runs internally.

        Raises:
            PaymentRequiredError: On an Error verdict.
        """
        context, handles = await self.build_context(user_id, task)
        verdict = decide(context)
        reservation: CreditReservation | None = None

        try:
            if verdict.source == KeySource.Internal:
                reservation = await self._reserve(user_id, task)
                if reservation is None:
                    # Drained by a concurrent request since the balance read
                    context = context.model_copy(update={"has_credits": False})
                    verdict = decide(context)
            await self._emit_decision(context, verdict, task)
        except asyncio.CancelledError:
            if reservation is not None:
                await self._credit_ledger.release(reservation)
            raise

        if verdict.source == KeySource.Error:
            raise build_payment_required(context, verdict)
        return context, verdict, handles, reservation

    @staticmethod
    def _explain(verdict: RoutingVerdict, fell_back: bool) -> tuple[str, str]:
        if not fell_back:
            return verdict.rule, verdict.explanation
        provider = verdict.provider.value if verdict.provider else ""
        return (
            "auth_failure_fallback",
            f"Your {provider} API key was rejected, using internal credits",
        )

    @staticmethod
    def _final_error(outcome: AttemptOutcome) -> ProviderError:
        return outcome.error or ProviderError(
            kind=ErrorKind.Other,
            message="Provider call produced no response",
            provider=outcome.provider,
        )

    @staticmethod
    def _should_fall_back(context: RoutingContext, outcome: AttemptOutcome) -> bool:
        return (
            outcome.phase == AttemptPhase.Primary
            and outcome.source == KeySource.Byok
            and outcome.response is None
            and not outcome.cancelled
            and outcome.error is not None
            and outcome.error.kind == ErrorKind.Auth
            and not context.policy.byok_only_mode
        )

    async def _prepare_fallback(
        self,
        user_id: str,
        task: InferenceTask,
        failed: AttemptOutcome,
    ) -> CreditReservation | None:
        """Primary -> Fallback: retire a rejected user key and hold credit instead.

        Returns None, leaving the failed outcome final, when the user has no
        credit to reserve.
        """
        reservation = await self._reserve(user_id, task)
        if reservation is None:
            return None

        error_message = failed.error.message if failed.error else "Authentication failed"
        try:
            if failed.key_id is not None:
                await self._key_store.mark_invalid(failed.key_id, error_message)
            await self._recorder.note_failed_attempt(failed)
            await emit_safely(
                self._observability,
                "fallback_to_internal",
                {
                    "user_id": user_id,
                    "key_id": failed.key_id,
                    "provider": failed.provider.value,
                    "error": error_message,
                },
                metadata={"request_id": task.request_id},
            )
        except asyncio.CancelledError:
            await self._credit_ledger.release(reservation)
            raise
        return reservation

    async def _reserve(self, user_id: str, task: InferenceTask) -> CreditReservation | None:
        try:
            return await self._credit_ledger.reserve(
                user_id,
                self._pricing.estimate(task),
                reference_id=task.request_id,
            )
        except InsufficientCreditError:
            return None

    def _primary_attempt(
        self,
        user_id: str,
        task: InferenceTask,
        verdict: RoutingVerdict,
        handles: dict[Provider, KeyHandle],
        reservation: CreditReservation | None,
    ) -> tuple[AttemptOutcome, str | None]:
        if verdict.source == KeySource.Byok and verdict.provider is not None:
            return self._byok_attempt(user_id, task, handles[verdict.provider])
        return self._internal_attempt(user_id, task, reservation, AttemptPhase.Primary)

    def _byok_attempt(
        self,
        user_id: str,
        task: InferenceTask,
        handle: KeyHandle,
    ) -> tuple[AttemptOutcome, str | None]:
        """Start an attempt on a user key. The credential is None if it is unusable."""
        outcome = AttemptOutcome(
            user_id=user_id,
            task=task,
            source=KeySource.Byok,
            provider=handle.provider,
            key_id=handle.key_id,
        )
        try:
            return outcome, handle.reveal()
        except EncryptionError as e:
            # A key that cannot be decrypted is as unusable as a rejected one
            outcome.error = ProviderError(
                kind=ErrorKind.Auth,
                message=f"Stored API key could not be decrypted: {e}",
                provider=handle.provider,
            )
            return outcome, None

    def _internal_attempt(
        self,
        user_id: str,
        task: InferenceTask,
        reservation: CreditReservation | None,
        phase: AttemptPhase,
    ) -> tuple[AttemptOutcome, str | None]:
        """Start an attempt on the platform key. The credential is None if none is configured."""
        provider = self._internal_provider(task)
        outcome = AttemptOutcome(
            user_id=user_id,
            task=task,
            source=KeySource.Internal,
            provider=provider,
            phase=phase,
            reservation=reservation,
        )
        credential = self._platform_credentials.get(provider)
        if not credential:
            outcome.error = ProviderError(
                kind=ErrorKind.Other,
                message=f"No platform credential configured for {provider.value}",
                provider=provider,
                provider_code="no_platform_key",
            )
            return outcome, None
        return outcome, credential

    def _internal_provider(self, task: InferenceTask) -> Provider:
        """Pick the platform provider: pinned, else preferred, else the first configured."""
        pinned = task.resolved_pinned_provider()
        if pinned is not None:
            return pinned
        preferred = task.resolved_preferred_provider()
        order = (preferred, *_INTERNAL_PROVIDER_ORDER) if preferred else _INTERNAL_PROVIDER_ORDER
        for provider in order:
            client = self._clients.get(provider)
            if (
                client is not None
                and client.supports(task.kind)
                and self._platform_credentials.get(provider)
            ):
                return provider
        return preferred or _INTERNAL_PROVIDER_ORDER[0]

    def _client_for(self, outcome: AttemptOutcome) -> ProviderClient | None:
        """The client that can run the attempt, or None with the attempt's error set."""
        client = self._clients.get(outcome.provider)
        if client is None or not client.supports(outcome.task.kind):
            outcome.error = ProviderError(
                kind=ErrorKind.Other,
                message=f"{outcome.provider.value} does not support {outcome.task.kind.value} tasks",
                provider=outcome.provider,
                provider_code="unsupported_task",
            )
            return None
        return client

    async def _run(self, outcome: AttemptOutcome, credential: str) -> AttemptOutcome:
        """Run the call for an attempt, filling in its response or error.

        On cancellation the attempt is recorded with whatever usage the
        provider reported so far, then the cancellation propagates.
        """
        client = self._client_for(outcome)
        if client is None:
            return outcome

        task = outcome.task
        meter = UsageMeter()
        try:
            outcome.response = await self._with_retry(
                client, task, lambda: client.call(credential, task, meter)
            )
        except ProviderError as e:
            outcome.error = e
            outcome.usage = meter.usage or e.partial_usage
        except asyncio.CancelledError:
            outcome.cancelled = True
            outcome.usage = meter.usage
            await self._recorder.record(outcome)
            raise
        else:
            outcome.usage = outcome.response.usage
        return outcome

    async def _start_stream(
        self,
        outcome: AttemptOutcome,
        credential: str,
        meter: UsageMeter,
    ) -> tuple[AsyncGenerator[str, None], str | None] | None:
        """Open the provider stream and wait for its first delta.

        Returns None with the attempt's error set if the stream never started.
        """
        client = self._client_for(outcome)
        if client is None:
            return None

        task = outcome.task
        try:
            return await self._with_retry(
                client, task, lambda: self._first_delta(client, credential, task, meter)
            )
        except ProviderError as e:
            outcome.error = e
            outcome.usage = meter.usage or e.partial_usage
            return None
        except asyncio.CancelledError:
            outcome.cancelled = True
            outcome.usage = meter.usage
            await self._recorder.record(outcome)
            raise

    @staticmethod
    async def _first_delta(
        client: ProviderClient,
        credential: str,
        task: InferenceTask,
        meter: UsageMeter,
    ) -> tuple[AsyncGenerator[str, None], str | None]:
        deltas = client.stream(credential, task, meter)
        try:
            first = await anext(deltas)
        except StopAsyncIteration:
            return deltas, None
        except BaseException:
            await deltas.aclose()
            raise
        return deltas, first

    async def _relay(
        self,
        outcome: AttemptOutcome,
        deltas: AsyncGenerator[str, None],
        first: str | None,
        meter: UsageMeter,
    ) -> AsyncGenerator[str, None]:
        """Pass provider deltas through and record the attempt when the stream ends."""
        started = time.perf_counter()
        parts: list[str] = []
        try:
            if first is not None:
                parts.append(first)
                yield first
            async for delta in deltas:
                parts.append(delta)
                yield delta
        except ProviderError as e:
            outcome.error = e
            raise
        except (asyncio.CancelledError, GeneratorExit):
            # Client went away midway
            outcome.cancelled = True
            raise
        else:
            usage = meter.usage or TokenUsage()
            client = self._clients[outcome.provider]
            outcome.response = ProviderResponse(
                content="".join(parts),
                model=outcome.task.model,
                provider=outcome.provider,
                usage=usage,
                estimated_cost_cents=client.estimate_cost_cents(outcome.task.model, usage),
                latency_ms=int((time.perf_counter() - started) * 1000),
            )
        finally:
            await deltas.aclose()
            outcome.usage = meter.usage
            await self._recorder.record(outcome)
            await emit_safely(
                self._observability,
                "stream_closed",
                {
                    "user_id": outcome.user_id,
                    "source": outcome.source.value,
                    "provider": outcome.provider.value,
                    "deltas": len(parts),
                    "completed": outcome.succeeded,
                    "cancelled": outcome.cancelled,
                },
                metadata={"request_id": outcome.task.request_id},
            )

    async def _abandon(
        self,
        outcome: AttemptOutcome,
        deltas: AsyncGenerator[str, None],
        meter: UsageMeter,
    ) -> None:
        """Close a stream its caller never read, billing what it consumed."""
        await deltas.aclose()
        outcome.cancelled = True
        outcome.usage = meter.usage
        await self._recorder.record(outcome)

    async def _with_retry(
        self,
        client: ProviderClient,
        task: InferenceTask,
        operation: Callable[[], Awaitable[_T]],
    ) -> _T:
        """Run a provider operation, retrying transient failures on the same credential.

        Raises:
            ProviderError: The last error once retries are exhausted, or the
                first non-transient error.
        """
        timeout = task.timeout_seconds or self._timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(operation(), timeout=timeout)
            except TimeoutError:
                error = ProviderError(
                    kind=ErrorKind.Transient,
                    message=f"{client.provider.value} call timed out after {timeout}s",
                    provider=client.provider,
                    provider_code="timeout",
                )
            except ProviderError as e:
                if not e.retryable:
                    raise
                error = e

            if attempt >= self._max_attempts:
                raise error

            delay = self._backoff_delay(attempt, error.retry_after)
            await self._observability.log(
                level="WARNING",
                message=f"Transient {client.provider.value} failure, retrying in {delay:.2f}s",
                context={
                    "attempt": attempt,
                    "max_attempts": self._max_attempts,
                    "error": error.message,
                    "request_id": task.request_id,
                },
            )
            await self._sleep(delay)

    def _backoff_delay(self, attempt: int, retry_after: float | None) -> float:
        delay = min(self._max_delay, self._base_delay * (2 ** (attempt - 1)))
        if retry_after is not None:
            delay = max(delay, min(retry_after, self._max_delay))
        return delay

    async def _emit_decision(
        self,
        context: RoutingContext,
        verdict: RoutingVerdict,
        task: InferenceTask,
    ) -> None:
        await emit_safely(
            self._observability,
            "routing_decision",
            {
                "user_id": context.user_id,
                "source": verdict.source.value,
                "rule": verdict.rule,
                "provider": verdict.provider.value if verdict.provider else None,
                "key_id": verdict.key_id,
                "reason": verdict.reason.value if verdict.reason else None,
                "explanation": verdict.explanation,
                "has_credits": context.has_credits,
                "byok_providers": sorted(p.value for p in context.byok_providers),
                **context.policy.as_flags(),
            },
            metadata={"request_id": task.request_id, "task_kind": task.kind.value},
        )
