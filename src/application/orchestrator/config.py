"""Agent loop configuration."""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from application.settings import Settings


class ToolTimeoutPolicy(str, Enum):
    """How tool calls of one dispatch phase are timed."""

    PER_CALL = "per_call"  # every call gets the full per-call timeout
    SHARED = "shared"  # all calls of the phase share one deadline


class ToolDispatchMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


@dataclass
class OrchestratorConfig:
    """Configuration for the agent loop.

    Attributes:
        system_prompt: Instructions sent with every model call
        max_tool_calls: Tool-call budget per turn
        max_model_calls: Maximum model calls per turn (prevents infinite loops)
        turn_timeout: Overall wall-clock budget for a turn, in seconds
        max_validation_failures: Tool schema violations tolerated per turn
        context_max_messages: Messages of the active path sent as context
        tool_call_timeout: Timeout for a single tool call
        tool_timeout_policy: Per-call timeouts or one shared phase deadline
        tool_phase_timeout: Deadline of a dispatch phase under the shared policy
        tool_dispatch_mode: Run independent calls in parallel or one at a time
        provider_timeout: Provider call timeout override (None uses the credential's)
        temperature: Sampling temperature
        max_tokens: Output token limit per model call
    """

    system_prompt: str | None = None
    max_tool_calls: int = 10
    max_model_calls: int = 8
    turn_timeout: float | None = 300.0
    max_validation_failures: int = 3
    context_max_messages: int = 50
    tool_call_timeout: float | None = 30.0
    tool_timeout_policy: ToolTimeoutPolicy = ToolTimeoutPolicy.PER_CALL
    tool_phase_timeout: float | None = 60.0
    tool_dispatch_mode: ToolDispatchMode = ToolDispatchMode.PARALLEL
    provider_timeout: float | None = None
    temperature: float | None = None
    max_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_tool_calls < 0:
            raise ValueError("max_tool_calls must be >= 0")
        if self.max_model_calls < 1:
            raise ValueError("max_model_calls must be >= 1")
        if self.context_max_messages < 1:
            raise ValueError("context_max_messages must be >= 1")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "OrchestratorConfig":
        return cls(
            system_prompt=settings.agent_system_prompt or None,
            max_tool_calls=settings.agent_max_tool_calls,
            max_model_calls=settings.agent_max_model_calls,
            turn_timeout=settings.agent_turn_timeout_seconds or None,
            max_validation_failures=settings.agent_max_validation_failures,
            context_max_messages=settings.agent_context_max_messages,
            tool_call_timeout=settings.tool_call_timeout_seconds or None,
            tool_timeout_policy=ToolTimeoutPolicy(settings.tool_timeout_policy),
            tool_phase_timeout=settings.tool_phase_timeout_seconds or None,
            tool_dispatch_mode=ToolDispatchMode(settings.tool_dispatch_mode),
            temperature=settings.default_temperature,
            max_tokens=settings.default_max_tokens,
        )
