"""Provider adapter implementations."""

from .anthropic_provider_adapter import AnthropicProviderAdapter
from .ollama_provider_adapter import OllamaProviderAdapter
from .openai_provider_adapter import OpenAiProviderAdapter

__all__ = [
    "AnthropicProviderAdapter",
    "OllamaProviderAdapter",
    "OpenAiProviderAdapter",
]
