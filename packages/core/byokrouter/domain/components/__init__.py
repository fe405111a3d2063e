"""Domain components."""

from byokrouter.domain.components.credit_ledger_reader import CreditLedgerReader
from byokrouter.domain.components.credit_pricing import CreditPricing
from byokrouter.domain.components.decision_engine import (
    DECISION_TABLE,
    DecisionRule,
    decide,
    explain_policy,
    select_byok_key,
)
from byokrouter.domain.components.dispatcher import RequestDispatcher
from byokrouter.domain.components.key_store import (
    KeyHandle,
    KeyNotFoundError,
    KeyStore,
    KeyValidationError,
)
from byokrouter.domain.components.policy_resolver import PolicyResolver
from byokrouter.domain.components.usage_recorder import UsageRecorder

__all__ = [
    "CreditLedgerReader",
    "CreditPricing",
    "DECISION_TABLE",
    "DecisionRule",
    "decide",
    "explain_policy",
    "select_byok_key",
    "RequestDispatcher",
    "KeyHandle",
    "KeyNotFoundError",
    "KeyStore",
    "KeyValidationError",
    "PolicyResolver",
    "UsageRecorder",
]
