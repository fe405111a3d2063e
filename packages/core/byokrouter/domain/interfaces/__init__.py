"""Domain interfaces for dependency injection."""

from byokrouter.domain.interfaces.credit_ledger import (
    CreditLedger,
    InsufficientCreditError,
    LedgerError,
)
from byokrouter.domain.interfaces.key_repository import KeyRepository, KeyStoreError
from byokrouter.domain.interfaces.observability_manager import (
    ObservabilityError,
    ObservabilityManager,
)
from byokrouter.domain.interfaces.policy_source import PolicySource, PolicySourceError
from byokrouter.domain.interfaces.provider_client import ProviderClient
from byokrouter.domain.interfaces.usage_log import UsageLog

__all__ = [
    "CreditLedger",
    "InsufficientCreditError",
    "LedgerError",
    "KeyRepository",
    "KeyStoreError",
    "ObservabilityError",
    "ObservabilityManager",
    "PolicySource",
    "PolicySourceError",
    "ProviderClient",
    "UsageLog",
]
