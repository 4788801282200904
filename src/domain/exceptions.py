"""Error taxonomy for the agent gateway.

Three families cover everything that can end or degrade a turn:

- ProviderError: failures talking to a model provider
- ToolError: failures resolving, validating or executing a tool
- OrchestratorError: failures of the agent loop itself

Errors carry a ``kind`` so callers branch on the category instead of on
exception subclasses, and serialize with ``to_dict()`` for error deltas.
"""

from enum import Enum
from typing import Any


class GatewayError(Exception):
    """Base exception for all gateway errors.

    Attributes:
        message: Human-readable description
        error_code: Machine-readable code for programmatic handling
        is_retryable: Whether repeating the same operation may succeed
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        error_code: str,
        is_retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.is_retryable = is_retryable
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "message": self.message,
            "error_code": self.error_code,
            "is_retryable": self.is_retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# =============================================================================
# Provider errors
# =============================================================================


class ProviderErrorKind(str, Enum):
    """Categories of provider failures."""

    TRANSIENT = "transient"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    CONTENT_POLICY = "content_policy"
    FATAL = "fatal"


RETRYABLE_PROVIDER_ERRORS = frozenset({ProviderErrorKind.TRANSIENT, ProviderErrorKind.RATE_LIMIT})


class ProviderError(GatewayError):
    """A model provider call failed.

    Attributes:
        kind: Failure category driving retry/failover decisions
        provider_id: The credential/provider that produced the error
        status_code: HTTP status code when the failure was an HTTP response
        retry_after: Seconds the provider asked us to wait (429/503 responses)
    """

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind,
        provider_id: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code=error_code or f"provider_{kind.value}",
            is_retryable=kind in RETRYABLE_PROVIDER_ERRORS,
            details=details,
        )
        self.kind = kind
        self.provider_id = provider_id
        self.status_code = status_code
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "category": "provider",
                "kind": self.kind.value,
                "provider_id": self.provider_id,
                "status_code": self.status_code,
            }
        )
        return data


# =============================================================================
# Tool errors
# =============================================================================


class ToolErrorKind(str, Enum):
    """Categories of tool failures."""

    VALIDATION = "validation"
    TIMEOUT = "timeout"
    EXECUTION = "execution"
    UNAVAILABLE = "unavailable"


class ToolError(GatewayError):
    """A tool could not be resolved, validated or executed."""

    def __init__(
        self,
        message: str,
        kind: ToolErrorKind,
        tool_name: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code=f"tool_{kind.value}",
            is_retryable=kind in (ToolErrorKind.TIMEOUT, ToolErrorKind.UNAVAILABLE),
            details=details,
        )
        self.kind = kind
        self.tool_name = tool_name

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"category": "tool", "kind": self.kind.value, "tool_name": self.tool_name})
        return data


class ToolNotFoundError(ToolError):
    """Raised when no static or discovered tool matches a name."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool not found: {tool_name}", kind=ToolErrorKind.UNAVAILABLE, tool_name=tool_name)


# =============================================================================
# Orchestrator errors
# =============================================================================


class OrchestratorErrorKind(str, Enum):
    """Categories of agent loop failures."""

    BUDGET_EXHAUSTED = "budget_exhausted"
    TRUNCATED_STREAM = "truncated_stream"
    CANCELLED = "cancelled"
    TURN_TIMEOUT = "turn_timeout"
    TURN_CONFLICT = "turn_conflict"
    TOOL_VALIDATION = "tool_validation"


class OrchestratorError(GatewayError):
    """The agent loop could not complete the turn."""

    def __init__(self, message: str, kind: OrchestratorErrorKind, details: dict[str, Any] | None = None) -> None:
        super().__init__(message=message, error_code=f"orchestrator_{kind.value}", details=details)
        self.kind = kind

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"category": "orchestrator", "kind": self.kind.value})
        return data


# =============================================================================
# Programming errors
# =============================================================================


class TurnStateError(Exception):
    """Raised when a turn record is used in a way its lifecycle forbids.

    Double finalization, opening a second draft, or mutating a finalized
    turn are bugs in the caller, not runtime conditions to recover from.
    """

    def __init__(self, message: str, turn_id: str | None = None) -> None:
        super().__init__(message)
        self.turn_id = turn_id


class StreamClosedError(Exception):
    """Raised when pushing into a stream that already emitted its terminal event."""
