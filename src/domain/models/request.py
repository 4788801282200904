"""Provider-neutral request model."""

from dataclasses import dataclass, field
from typing import Any

from .message import Message


@dataclass(frozen=True)
class ToolSpec:
    """A tool offered to the model, described by a JSON schema."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class CanonicalRequest:
    """A model request before translation to any provider's wire format.

    Attributes:
        messages: Conversation context, oldest first
        model: Model name, None to use the credential's default model
        tools: Tools the model may call
        system_prompt: Instructions prepended by adapters in their native way
        temperature: Sampling temperature
        max_tokens: Output token limit
        stream: Request incremental output when the provider supports it
        extra: Provider options passed through untouched
    """

    messages: list[Message]
    model: str | None = None
    tools: list[ToolSpec] = field(default_factory=list)
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = True
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderRequest:
    """A translated request ready to be sent over HTTP."""

    url: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    stream: bool = True
