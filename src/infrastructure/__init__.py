"""Infrastructure layer: provider adapters, the provider registry and MCP tool servers."""

from .adapters import AnthropicProviderAdapter, OllamaProviderAdapter, OpenAiProviderAdapter
from .provider_registry import ProviderRegistry, credential_from_config

__all__ = [
    "AnthropicProviderAdapter",
    "OllamaProviderAdapter",
    "OpenAiProviderAdapter",
    "ProviderRegistry",
    "credential_from_config",
]
