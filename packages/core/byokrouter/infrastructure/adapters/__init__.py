"""Provider client implementations."""

from byokrouter.infrastructure.adapters.anthropic_client import AnthropicClient
from byokrouter.infrastructure.adapters.base import HttpProviderClient
from byokrouter.infrastructure.adapters.openai_client import OpenAIClient

__all__ = ["AnthropicClient", "HttpProviderClient", "OpenAIClient"]
