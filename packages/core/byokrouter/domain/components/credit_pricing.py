"""Internal credit pricing for platform-key requests."""

import math

from byokrouter.domain.models.system_response import TokenUsage
from byokrouter.domain.models.task import InferenceTask, TaskKind


class CreditPricing:
    """Converts tasks and token usage into internal credits.

    A request costs a base amount per task kind plus a per-1K-token charge.
    The dispatcher reserves estimate() before the call and the usage
    recorder commits actual(), which never exceeds the reservation.
    """

    def __init__(
        self,
        base_costs: dict[TaskKind, int],
        credits_per_1k_tokens: float = 1.0,
        max_cost: int = 100,
        default_output_tokens: int = 1000,
    ) -> None:
        """Initialize CreditPricing.

        Args:
            base_costs: Flat credit cost per task kind.
            credits_per_1k_tokens: Credits charged per 1000 tokens.
            max_cost: Upper bound on a single reservation.
            default_output_tokens: Output tokens assumed when a task gives no
                max_tokens.
        """
        self._base_costs = dict(base_costs)
        self._credits_per_1k_tokens = credits_per_1k_tokens
        self._max_cost = max_cost
        self._default_output_tokens = default_output_tokens

    def base_cost(self, kind: TaskKind) -> int:
        return self._base_costs.get(kind, 1)

    def _token_charge(self, tokens: int) -> int:
        return math.ceil(tokens / 1000 * self._credits_per_1k_tokens)

    def estimate(self, task: InferenceTask) -> int:
        """Credits to reserve before running a task (at least 1)."""
        tokens = task.max_output_tokens
        if tokens is None:
            tokens = self._default_output_tokens
        cost = self.base_cost(task.kind) + self._token_charge(tokens)
        return max(1, min(cost, self._max_cost))

    def actual(self, task: InferenceTask, usage: TokenUsage | None, reserved: int) -> int:
        """Credits to charge for a completed call, capped at what was reserved."""
        tokens = usage.total_tokens if usage is not None else 0
        cost = self.base_cost(task.kind) + self._token_charge(tokens)
        return min(cost, reserved)
