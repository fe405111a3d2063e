"""Configuration settings using pydantic-settings."""

from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from byokrouter.domain.models.policy import RoutingPolicy
from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.task import TaskKind


class ByokSettings(BaseSettings):
    """Configuration settings for the BYOK router.

    Settings can be loaded from environment variables or passed as a dictionary.
    Environment variables are prefixed with 'BYOKROUTER_'
    (e.g., BYOKROUTER_AUTH_FAILURE_THRESHOLD=5).

    Example:
        ```python
        # From environment variables
        settings = ByokSettings()

        # From dictionary
        settings = ByokSettings.from_dict({"byok_enabled": True})
        ```
    """

    model_config = SettingsConfigDict(
        env_prefix="BYOKROUTER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Routing policy defaults (served when no policy source answers)
    byok_enabled: bool = Field(default=False)
    byok_uses_internal_credits: bool = Field(default=False)
    byok_only_mode: bool = Field(default=False)
    policy_file: str | None = Field(
        default=None,
        description="YAML/JSON file holding a routing_policy mapping",
    )
    policy_cache_ttl_seconds: float = Field(
        default=120.0,
        description="How long a loaded policy is served before a background refresh",
        gt=0,
    )

    # Storage
    storage_backend: Literal["memory", "redis"] = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_key_prefix: str = Field(default="byok")

    # Key store
    encryption_key: str | None = Field(
        default=None,
        description="Fernet key or passphrase used to encrypt stored secrets",
    )
    auth_failure_threshold: int = Field(
        default=3,
        description="Consecutive provider auth failures before a key is marked invalid",
        ge=1,
    )

    # Dispatcher
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=0.25, ge=0)
    retry_max_delay_seconds: float = Field(default=4.0, ge=0)
    provider_timeout_seconds: float = Field(default=30.0, gt=0)
    validation_timeout_seconds: float = Field(default=10.0, gt=0)

    # Platform credentials used on the internal path
    openai_api_key: str | None = Field(default=None)
    anthropic_api_key: str | None = Field(default=None)
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    anthropic_base_url: str = Field(default="https://api.anthropic.com/v1")

    # Internal credit pricing
    credit_costs: dict[TaskKind, int] = Field(
        default_factory=lambda: {
            TaskKind.Chat: 3,
            TaskKind.Embedding: 2,
            TaskKind.Transcription: 10,
            TaskKind.Agent: 5,
        },
        description="Base credit cost per task kind",
    )
    credits_per_1k_tokens: float = Field(default=1.0, ge=0)
    max_credit_cost: int = Field(default=100, ge=1)
    default_estimated_output_tokens: int = Field(default=1000, ge=0)

    # Observability configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_json: bool = Field(default=True)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_retry_delays(self) -> "ByokSettings":
        """Base delay cannot exceed the cap."""
        if self.retry_base_delay_seconds > self.retry_max_delay_seconds:
            raise ValueError("retry_base_delay_seconds must not exceed retry_max_delay_seconds")
        return self

    @property
    def default_policy(self) -> RoutingPolicy:
        """Routing policy built from the flag settings."""
        return RoutingPolicy(
            byok_enabled=self.byok_enabled,
            byok_uses_internal_credits=self.byok_uses_internal_credits,
            byok_only_mode=self.byok_only_mode,
        )

    def platform_credentials(self) -> dict[Provider, str]:
        """Platform keys for the internal path, by provider."""
        credentials: dict[Provider, str] = {}
        if self.openai_api_key:
            credentials[Provider.OpenAI] = self.openai_api_key
        if self.anthropic_api_key:
            credentials[Provider.Anthropic] = self.anthropic_api_key
        return credentials

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "ByokSettings":
        """Create settings from a dictionary.

        Args:
            config: Dictionary with configuration values.

        Returns:
            ByokSettings instance.
        """
        return cls(**config)
