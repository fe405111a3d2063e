"""ByokRouter - entry point wiring the key-source routing components."""

from typing import Any

from redis.asyncio import Redis

from byokrouter.domain.components.credit_ledger_reader import CreditLedgerReader
from byokrouter.domain.components.credit_pricing import CreditPricing
from byokrouter.domain.components.decision_engine import preview
from byokrouter.domain.components.dispatcher import RequestDispatcher
from byokrouter.domain.components.key_store import KeyStore
from byokrouter.domain.components.policy_resolver import PolicyResolver
from byokrouter.domain.components.usage_recorder import UsageRecorder
from byokrouter.domain.interfaces.credit_ledger import CreditLedger
from byokrouter.domain.interfaces.key_repository import KeyRepository
from byokrouter.domain.interfaces.observability_manager import ObservabilityManager
from byokrouter.domain.interfaces.policy_source import PolicySource
from byokrouter.domain.interfaces.provider_client import ProviderClient
from byokrouter.domain.interfaces.usage_log import UsageLog
from byokrouter.domain.models.api_key import ApiKeyRecord, KeyValidationResult
from byokrouter.domain.models.attempt import DispatchResult, StreamingDispatch
from byokrouter.domain.models.policy import RoutingPolicy
from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.routing import SettingsPreview
from byokrouter.domain.models.task import InferenceTask
from byokrouter.domain.models.usage import UsageSummary
from byokrouter.infrastructure.adapters.anthropic_client import AnthropicClient
from byokrouter.infrastructure.adapters.openai_client import OpenAIClient
from byokrouter.infrastructure.config.policy_sources import (
    FilePolicySource,
    SettingsPolicySource,
)
from byokrouter.infrastructure.config.settings import ByokSettings
from byokrouter.infrastructure.observability.logger import DefaultObservabilityManager
from byokrouter.infrastructure.state_store.memory_store import (
    InMemoryCreditLedger,
    InMemoryKeyRepository,
    InMemoryUsageLog,
)
from byokrouter.infrastructure.state_store.redis_store import (
    RedisCreditLedger,
    RedisKeyRepository,
    RedisPolicySource,
    RedisUsageLog,
    create_redis_client,
)
from byokrouter.infrastructure.utils.encryption import EncryptionService
from byokrouter.infrastructure.utils.validation import validate_user_id


class ByokRouter:
    """Main entry point for the library.

    ByokRouter builds the key store, credit ledger reader, policy resolver,
    dispatcher and usage recorder from settings, and exposes the operations
    applications need. Every collaborator can be injected instead.

    Example:
        ```python
        # In-memory backends, flags from BYOKROUTER_* variables
        router = ByokRouter()

        # With configuration
        router = ByokRouter(config={"byok_enabled": True, "openai_api_key": "sk-..."})

        async with ByokRouter() as router:
            result = await router.execute("user-1", task)
            print(result.source, result.response.content)
        ```
    """

    def __init__(
        self,
        config: ByokSettings | dict[str, Any] | None = None,
        key_repository: KeyRepository | None = None,
        credit_ledger: CreditLedger | None = None,
        usage_log: UsageLog | None = None,
        policy_source: PolicySource | None = None,
        provider_clients: dict[Provider, ProviderClient] | None = None,
        observability_manager: ObservabilityManager | None = None,
        encryption_service: EncryptionService | None = None,
    ) -> None:
        """Initialize ByokRouter with dependencies.

        Args:
            config: Optional configuration. Can be:
                   - ByokSettings instance
                   - Dictionary with configuration values
                   - None (loads from environment variables)
            key_repository: Optional key persistence. Defaults to the backend
                selected by storage_backend.
            credit_ledger: Optional credit ledger. Defaults to the backend
                selected by storage_backend.
            usage_log: Optional BYOK usage log. Defaults to the backend
                selected by storage_backend.
            policy_source: Optional policy source. Defaults to the policy file
                when policy_file is set, the Redis policy hash with the redis
                backend, else the BYOKROUTER_* variables.
            provider_clients: Optional clients by provider. Defaults to the
                OpenAI and Anthropic clients.
            observability_manager: Optional ObservabilityManager. Defaults to
                DefaultObservabilityManager.
            encryption_service: Optional EncryptionService. Defaults to one built
                from encryption_key or BYOKROUTER_ENCRYPTION_KEY.

        Raises:
            ValueError: If configuration is invalid.
        """
        if config is None:
            self._config = ByokSettings()
        elif isinstance(config, dict):
            self._config = ByokSettings.from_dict(config)
        elif isinstance(config, ByokSettings):
            self._config = config
        else:
            raise ValueError(
                f"Invalid config type: {type(config)}. Expected ByokSettings, dict, or None"
            )
        settings = self._config

        if observability_manager is None:
            self._observability_manager: ObservabilityManager = DefaultObservabilityManager(
                log_level=settings.log_level,
                json_format=settings.log_json,
            )
        else:
            self._observability_manager = observability_manager

        # Storage backends
        self._redis: Redis | None = None
        if settings.storage_backend == "redis":
            self._redis = create_redis_client(settings.redis_url)
        self._key_repository = key_repository or self._default_key_repository()
        self._credit_ledger = credit_ledger or self._default_credit_ledger()
        self._usage_log = usage_log or self._default_usage_log()

        if policy_source is None:
            if settings.policy_file:
                policy_source = FilePolicySource(settings.policy_file)
            elif self._redis is not None:
                policy_source = RedisPolicySource(
                    self._redis, settings.redis_key_prefix, settings.default_policy
                )
            else:
                policy_source = SettingsPolicySource()
        self._policy_source = policy_source

        if provider_clients is None:
            provider_clients = {
                Provider.OpenAI: OpenAIClient(
                    base_url=settings.openai_base_url,
                    timeout=settings.provider_timeout_seconds,
                ),
                Provider.Anthropic: AnthropicClient(
                    base_url=settings.anthropic_base_url,
                    timeout=settings.provider_timeout_seconds,
                ),
            }
        self._provider_clients = provider_clients

        self._pricing = CreditPricing(
            base_costs=settings.credit_costs,
            credits_per_1k_tokens=settings.credits_per_1k_tokens,
            max_cost=settings.max_credit_cost,
            default_output_tokens=settings.default_estimated_output_tokens,
        )

        self._key_store = KeyStore(
            key_repository=self._key_repository,
            provider_clients=self._provider_clients,
            observability_manager=self._observability_manager,
            encryption_service=encryption_service or EncryptionService(settings.encryption_key),
            auth_failure_threshold=settings.auth_failure_threshold,
            validation_timeout_seconds=settings.validation_timeout_seconds,
        )
        self._ledger_reader = CreditLedgerReader(self._credit_ledger)
        self._policy_resolver = PolicyResolver(
            source=self._policy_source,
            observability_manager=self._observability_manager,
            ttl_seconds=settings.policy_cache_ttl_seconds,
            default_policy=settings.default_policy,
        )
        self._usage_recorder = UsageRecorder(
            key_store=self._key_store,
            credit_ledger=self._credit_ledger,
            usage_log=self._usage_log,
            observability_manager=self._observability_manager,
            pricing=self._pricing,
        )
        self._dispatcher = RequestDispatcher(
            key_store=self._key_store,
            ledger_reader=self._ledger_reader,
            credit_ledger=self._credit_ledger,
            policy_resolver=self._policy_resolver,
            usage_recorder=self._usage_recorder,
            provider_clients=self._provider_clients,
            platform_credentials=settings.platform_credentials(),
            observability_manager=self._observability_manager,
            pricing=self._pricing,
            retry_max_attempts=settings.retry_max_attempts,
            retry_base_delay_seconds=settings.retry_base_delay_seconds,
            retry_max_delay_seconds=settings.retry_max_delay_seconds,
            provider_timeout_seconds=settings.provider_timeout_seconds,
        )

    def _default_key_repository(self) -> KeyRepository:
        if self._redis is not None:
            return RedisKeyRepository(self._redis, self._config.redis_key_prefix)
        return InMemoryKeyRepository()

    def _default_credit_ledger(self) -> CreditLedger:
        if self._redis is not None:
            return RedisCreditLedger(self._redis, self._config.redis_key_prefix)
        return InMemoryCreditLedger()

    def _default_usage_log(self) -> UsageLog:
        if self._redis is not None:
            return RedisUsageLog(self._redis, self._config.redis_key_prefix)
        return InMemoryUsageLog()

    async def __aenter__(self) -> "ByokRouter":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @property
    def config(self) -> ByokSettings:
        return self._config

    @property
    def key_store(self) -> KeyStore:
        return self._key_store

    @property
    def credit_ledger(self) -> CreditLedger:
        return self._credit_ledger

    @property
    def usage_log(self) -> UsageLog:
        return self._usage_log

    @property
    def policy_source(self) -> PolicySource:
        return self._policy_source

    @property
    def policy_resolver(self) -> PolicyResolver:
        return self._policy_resolver

    @property
    def dispatcher(self) -> RequestDispatcher:
        return self._dispatcher

    @property
    def usage_recorder(self) -> UsageRecorder:
        return self._usage_recorder

    @property
    def observability_manager(self) -> ObservabilityManager:
        return self._observability_manager

    async def execute(self, user_id: str, task: InferenceTask) -> DispatchResult:
        """Route and run a task for a user.

        Raises:
            ValidationError: If user_id is malformed.
            PaymentRequiredError: If there is no usable credential.
            ProviderError: If the provider call failed.
        """
        return await self._dispatcher.execute(validate_user_id(user_id), task)

    async def stream(self, user_id: str, task: InferenceTask) -> StreamingDispatch:
        """Route a chat task and open it as a stream of text deltas.

        Raises:
            ValidationError: If user_id is malformed.
            PaymentRequiredError: If there is no usable credential.
            ProviderError: If the stream could not be started.
        """
        return await self._dispatcher.open_stream(validate_user_id(user_id), task)

    async def settings_preview(self, user_id: str) -> SettingsPreview:
        """Show what routing would do for the user's next request."""
        context, _ = await self._dispatcher.build_context(validate_user_id(user_id))
        policy = context.policy
        enabled = policy.byok_enabled or policy.byok_only_mode or policy.byok_uses_internal_credits
        return preview(context, enabled=enabled)

    async def add_key(self, user_id: str, provider: Provider | str, api_key: str) -> ApiKeyRecord:
        """Validate and store a user's key (replacing one for the same provider)."""
        return await self._key_store.add_or_replace_key(user_id, provider, api_key)

    async def list_keys(self, user_id: str) -> list[dict[str, Any]]:
        return await self._key_store.list_keys(user_id)

    async def delete_key(self, user_id: str, key_id: str) -> None:
        await self._key_store.delete_key(user_id, key_id)

    async def test_key(self, user_id: str, key_id: str) -> KeyValidationResult:
        return await self._key_store.test_key(user_id, key_id)

    async def usage_summary(self, user_id: str, days: int = 30) -> UsageSummary:
        return await self._usage_recorder.usage_summary(user_id, days)

    async def current_policy(self) -> RoutingPolicy:
        return await self._policy_resolver.current_policy()

    async def refresh_policy(self) -> RoutingPolicy:
        """Reload the routing policy from its source now.

        Raises:
            PolicySourceError: If the source cannot be loaded.
        """
        return await self._policy_resolver.force_refresh()

    async def close(self) -> None:
        """Stop background work and release network resources."""
        await self._policy_resolver.close()
        for client in self._provider_clients.values():
            await client.close()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
