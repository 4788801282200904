"""Canonical delta events.

Every provider adapter translates its native output into this one grammar:
zero or more content deltas followed by exactly one ``done`` or ``error``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DeltaType(str, Enum):
    """Types of canonical delta events."""

    TEXT = "text"
    TOOL_CALL_START = "tool-call-start"
    TOOL_CALL_ARGS = "tool-call-args"
    TOOL_CALL_END = "tool-call-end"
    USAGE = "usage"
    ERROR = "error"
    DONE = "done"


TERMINAL_DELTA_TYPES = frozenset({DeltaType.DONE, DeltaType.ERROR})


@dataclass(frozen=True)
class CanonicalDelta:
    """A single normalized increment of model output.

    Attributes:
        type: The delta type
        payload: Type-specific data (see the factory methods for shapes)
    """

    type: DeltaType
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_DELTA_TYPES

    @classmethod
    def text(cls, text: str) -> "CanonicalDelta":
        return cls(DeltaType.TEXT, {"text": text})

    @classmethod
    def tool_call_start(cls, call_id: str, name: str, index: int = 0) -> "CanonicalDelta":
        return cls(DeltaType.TOOL_CALL_START, {"call_id": call_id, "name": name, "index": index})

    @classmethod
    def tool_call_args(cls, call_id: str, fragment: str) -> "CanonicalDelta":
        return cls(DeltaType.TOOL_CALL_ARGS, {"call_id": call_id, "fragment": fragment})

    @classmethod
    def tool_call_end(cls, call_id: str, truncated: bool = False) -> "CanonicalDelta":
        return cls(DeltaType.TOOL_CALL_END, {"call_id": call_id, "truncated": truncated})

    @classmethod
    def usage(cls, input_tokens: int = 0, output_tokens: int = 0) -> "CanonicalDelta":
        return cls(DeltaType.USAGE, {"input_tokens": input_tokens, "output_tokens": output_tokens})

    @classmethod
    def error(cls, error: dict[str, Any], partial: bool = False) -> "CanonicalDelta":
        """Terminal error.

        Args:
            error: Serialized error (``GatewayError.to_dict()``)
            partial: True when content deltas were already emitted before the failure
        """
        return cls(DeltaType.ERROR, {"error": error, "partial": partial})

    @classmethod
    def done(cls, finish_reason: str | None = None, truncated: bool = False) -> "CanonicalDelta":
        return cls(DeltaType.DONE, {"finish_reason": finish_reason, "truncated": truncated})

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "payload": dict(self.payload)}
