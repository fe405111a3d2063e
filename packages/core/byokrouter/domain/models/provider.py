"""Provider enum, provider catalogue and model-family inference."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Provider(str, Enum):
    """Third-party inference providers a user can bring a key for."""

    OpenAI = "openai"
    """OpenAI (chat, embeddings, transcription)."""

    Anthropic = "anthropic"
    """Anthropic (chat only)."""


class ProviderInfo(BaseModel):
    """Public description of a supported provider."""

    id: Provider
    name: str
    description: str
    docs_url: str = Field(..., description="Where users create their API key")
    key_format_hint: str = Field(..., description="Visible key prefix shown in the UI")

    model_config = ConfigDict(frozen=True)


SUPPORTED_PROVIDERS: tuple[ProviderInfo, ...] = (
    ProviderInfo(
        id=Provider.OpenAI,
        name="OpenAI",
        description="GPT-4, GPT-3.5, embeddings and Whisper transcription",
        docs_url="https://platform.openai.com/api-keys",
        key_format_hint="sk-...",
    ),
    ProviderInfo(
        id=Provider.Anthropic,
        name="Anthropic",
        description="Claude 3 models (Opus, Sonnet, Haiku)",
        docs_url="https://console.anthropic.com/settings/keys",
        key_format_hint="sk-ant-...",
    ),
)

# Model-name prefixes per provider family, checked in order
_MODEL_FAMILIES: tuple[tuple[Provider, tuple[str, ...]], ...] = (
    (Provider.Anthropic, ("claude", "anthropic")),
    (Provider.OpenAI, ("gpt", "o1", "o3", "text-embedding", "whisper", "openai")),
)


def infer_provider(model: str | None) -> Provider | None:
    """Infer the provider family of a model name.

    Args:
        model: Model identifier such as "gpt-4o" or "claude-3-haiku-20240307".

    Returns:
        The matching Provider, or None if the model family is unknown.
    """
    if not model:
        return None
    name = model.strip().lower()
    for provider, prefixes in _MODEL_FAMILIES:
        if name.startswith(prefixes):
            return provider
    return None


def get_provider_info(provider: Provider) -> ProviderInfo:
    """Return the catalogue entry for a provider."""
    for info in SUPPORTED_PROVIDERS:
        if info.id == provider:
            return info
    raise KeyError(provider)
