"""Domain models for the BYOK router."""

from byokrouter.domain.models.api_key import (
    ApiKeyRecord,
    KeyCandidate,
    KeyValidationResult,
    make_key_hint,
)
from byokrouter.domain.models.attempt import (
    AttemptOutcome,
    AttemptPhase,
    DispatchResult,
    StreamingDispatch,
)
from byokrouter.domain.models.policy import RoutingPolicy
from byokrouter.domain.models.provider import (
    SUPPORTED_PROVIDERS,
    Provider,
    ProviderInfo,
    infer_provider,
)
from byokrouter.domain.models.routing import (
    KeySource,
    ReasonCode,
    RoutingContext,
    RoutingVerdict,
    SettingsPreview,
)
from byokrouter.domain.models.system_error import (
    ErrorKind,
    PaymentRequiredError,
    ProviderError,
)
from byokrouter.domain.models.system_response import (
    ProviderResponse,
    TokenUsage,
    UsageMeter,
)
from byokrouter.domain.models.task import InferenceTask, Message, TaskKind
from byokrouter.domain.models.usage import (
    CreditReservation,
    CreditTransaction,
    ProviderUsage,
    UsageEvent,
    UsageSummary,
)

__all__ = [
    "ApiKeyRecord",
    "KeyCandidate",
    "KeyValidationResult",
    "make_key_hint",
    "AttemptOutcome",
    "AttemptPhase",
    "DispatchResult",
    "StreamingDispatch",
    "RoutingPolicy",
    "Provider",
    "ProviderInfo",
    "SUPPORTED_PROVIDERS",
    "infer_provider",
    "KeySource",
    "ReasonCode",
    "RoutingContext",
    "RoutingVerdict",
    "SettingsPreview",
    "ErrorKind",
    "PaymentRequiredError",
    "ProviderError",
    "ProviderResponse",
    "TokenUsage",
    "UsageMeter",
    "InferenceTask",
    "Message",
    "TaskKind",
    "CreditReservation",
    "CreditTransaction",
    "ProviderUsage",
    "UsageEvent",
    "UsageSummary",
]
