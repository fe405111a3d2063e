"""Configuration file loader for YAML and JSON policy files."""

import json
from pathlib import Path
from typing import Any

import yaml

from byokrouter.domain.models.policy import RoutingPolicy

_POLICY_FLAGS = ("byok_enabled", "byok_uses_internal_credits", "byok_only_mode")


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize ConfigurationError.

        Args:
            message: Human-readable error message.
            field: Optional field name that failed validation.
        """
        self.message = message
        self.field = field
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return error message with field name if available."""
        if self.field:
            return f"Configuration error in field '{self.field}': {self.message}"
        return self.message


class PolicyFileLoader:
    """Loads the routing policy from a YAML or JSON file.

    Expected layout:

        routing_policy:
          byok_enabled: true
          byok_uses_internal_credits: false
          byok_only_mode: false
    """

    def __init__(self, config_file_path: str | Path) -> None:
        """Initialize PolicyFileLoader.

        Args:
            config_file_path: Path to the policy file. Existence is checked on
                every load() so that a file that appears later is picked up.
        """
        self._config_path = Path(config_file_path)

    @property
    def path(self) -> Path:
        return self._config_path

    def load(self) -> dict[str, Any]:
        """Load the file, detecting the format from its extension.

        Raises:
            ConfigurationError: If the file is missing, unreadable or malformed.
        """
        if not self._config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {self._config_path}")

        suffix = self._config_path.suffix.lower()
        if suffix in (".yaml", ".yml"):
            return self._load_yaml()
        elif suffix == ".json":
            return self._load_json()
        else:
            raise ConfigurationError(
                f"Unsupported configuration file format: {suffix}. "
                "Supported formats: .yaml, .yml, .json"
            )

    def _load_yaml(self) -> dict[str, Any]:
        try:
            with self._config_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML format: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration file: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError("YAML file must contain a dictionary/mapping")
        return data

    def _load_json(self) -> dict[str, Any]:
        try:
            with self._config_path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON format: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration file: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError("JSON file must contain an object")
        return data

    def parse_policy(self, config: dict[str, Any]) -> RoutingPolicy:
        """Build a RoutingPolicy from the `routing_policy` section.

        Missing flags default to False; unknown keys are rejected.

        Raises:
            ConfigurationError: If the section is malformed.
        """
        section = config.get("routing_policy", {})
        if not isinstance(section, dict):
            raise ConfigurationError(
                "Configuration 'routing_policy' must be a mapping", field="routing_policy"
            )

        unknown = set(section) - set(_POLICY_FLAGS)
        if unknown:
            raise ConfigurationError(
                f"Unknown routing policy flags: {', '.join(sorted(unknown))}",
                field="routing_policy",
            )

        for flag, value in section.items():
            if not isinstance(value, bool):
                raise ConfigurationError(
                    f"Routing policy flag '{flag}' must be a boolean",
                    field=f"routing_policy.{flag}",
                )

        return RoutingPolicy(**section)

    def load_policy(self) -> RoutingPolicy:
        """Load and parse the policy in one step."""
        return self.parse_policy(self.load())
