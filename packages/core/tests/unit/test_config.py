"""Tests for settings, the policy file loader and policy sources."""

import json
import os

import pytest
from pydantic import ValidationError as PydanticValidationError

from byokrouter.domain.interfaces.policy_source import PolicySourceError
from byokrouter.domain.models.policy import RoutingPolicy
from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.task import TaskKind
from byokrouter.infrastructure.config.file_loader import ConfigurationError, PolicyFileLoader
from byokrouter.infrastructure.config.policy_sources import (
    FilePolicySource,
    SettingsPolicySource,
    StaticPolicySource,
)
from byokrouter.infrastructure.config.settings import ByokSettings


class TestByokSettings:
    """Tests for ByokSettings."""

    def test_defaults(self) -> None:
        settings = ByokSettings()
        assert settings.default_policy == RoutingPolicy()
        assert settings.auth_failure_threshold == 3
        assert settings.policy_cache_ttl_seconds == 120.0
        assert settings.retry_max_attempts == 3
        assert settings.storage_backend == "memory"
        assert settings.credit_costs[TaskKind.Transcription] == 10

    def test_env_prefix(self, monkeypatch) -> None:
        monkeypatch.setenv("BYOKROUTER_BYOK_ONLY_MODE", "true")
        monkeypatch.setenv("BYOKROUTER_AUTH_FAILURE_THRESHOLD", "5")
        settings = ByokSettings()
        assert settings.byok_only_mode
        assert settings.auth_failure_threshold == 5

    def test_from_dict(self) -> None:
        settings = ByokSettings.from_dict(
            {"byok_enabled": True, "openai_api_key": "sk-platform", "log_level": "debug"}
        )
        assert settings.default_policy.byok_enabled
        assert settings.log_level == "DEBUG"
        assert settings.platform_credentials() == {Provider.OpenAI: "sk-platform"}

    def test_invalid_values(self) -> None:
        with pytest.raises(PydanticValidationError):
            ByokSettings.from_dict({"log_level": "LOUD"})
        with pytest.raises(PydanticValidationError):
            ByokSettings.from_dict({"auth_failure_threshold": 0})
        with pytest.raises(PydanticValidationError):
            ByokSettings.from_dict(
                {"retry_base_delay_seconds": 5.0, "retry_max_delay_seconds": 1.0}
            )


class TestPolicyFileLoader:
    """Tests for PolicyFileLoader."""

    def test_yaml(self, tmp_path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text("routing_policy:\n  byok_enabled: true\n  byok_only_mode: false\n")
        policy = PolicyFileLoader(path).load_policy()
        assert policy == RoutingPolicy(byok_enabled=True)

    def test_json(self, tmp_path) -> None:
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"routing_policy": {"byok_uses_internal_credits": True}}))
        assert PolicyFileLoader(path).load_policy().byok_uses_internal_credits

    def test_empty_yaml_is_all_off(self, tmp_path) -> None:
        path = tmp_path / "policy.yml"
        path.write_text("")
        assert PolicyFileLoader(path).load_policy() == RoutingPolicy()

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            PolicyFileLoader(tmp_path / "missing.yaml").load()

    def test_unsupported_format(self, tmp_path) -> None:
        path = tmp_path / "policy.toml"
        path.write_text("")
        with pytest.raises(ConfigurationError, match="Unsupported"):
            PolicyFileLoader(path).load()

    def test_invalid_yaml(self, tmp_path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text("routing_policy: [unclosed")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            PolicyFileLoader(path).load()

    def test_unknown_flag(self, tmp_path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text("routing_policy:\n  byok_always: true\n")
        with pytest.raises(ConfigurationError) as exc_info:
            PolicyFileLoader(path).load_policy()
        assert exc_info.value.field == "routing_policy"

    def test_non_boolean_flag(self, tmp_path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text("routing_policy:\n  byok_enabled: 'yes please'\n")
        with pytest.raises(ConfigurationError, match="must be a boolean"):
            PolicyFileLoader(path).load_policy()


class TestPolicySources:
    """Tests for the PolicySource implementations."""

    @pytest.mark.asyncio
    async def test_static_source(self) -> None:
        source = StaticPolicySource()
        assert await source.load() == RoutingPolicy()
        source.set(RoutingPolicy(byok_only_mode=True))
        assert (await source.load()).byok_only_mode

    @pytest.mark.asyncio
    async def test_settings_source_rereads_environment(self, monkeypatch) -> None:
        source = SettingsPolicySource()
        assert not (await source.load()).byok_enabled
        monkeypatch.setenv("BYOKROUTER_BYOK_ENABLED", "true")
        assert (await source.load()).byok_enabled

    @pytest.mark.asyncio
    async def test_settings_source_wraps_invalid_values(self, monkeypatch) -> None:
        monkeypatch.setenv("BYOKROUTER_BYOK_ENABLED", "definitely")
        with pytest.raises(PolicySourceError):
            await SettingsPolicySource().load()

    @pytest.mark.asyncio
    async def test_file_source(self, tmp_path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text("routing_policy:\n  byok_only_mode: true\n")
        source = FilePolicySource(path)
        assert (await source.load()).byok_only_mode

        path.write_text("routing_policy:\n  byok_only_mode: false\n")
        assert not (await source.load()).byok_only_mode

    @pytest.mark.asyncio
    async def test_file_source_wraps_errors(self, tmp_path) -> None:
        with pytest.raises(PolicySourceError):
            await FilePolicySource(tmp_path / "missing.yaml").load()

    def test_env_is_isolated(self) -> None:
        """The autouse fixture keeps shell flags out of the tests."""
        assert "BYOKROUTER_BYOK_ONLY_MODE" not in os.environ
