"""Configuration infrastructure module."""

from byokrouter.infrastructure.config.file_loader import (
    ConfigurationError,
    PolicyFileLoader,
)
from byokrouter.infrastructure.config.policy_sources import (
    FilePolicySource,
    SettingsPolicySource,
    StaticPolicySource,
)
from byokrouter.infrastructure.config.settings import ByokSettings

__all__ = [
    "ByokSettings",
    "ConfigurationError",
    "PolicyFileLoader",
    "FilePolicySource",
    "SettingsPolicySource",
    "StaticPolicySource",
]
