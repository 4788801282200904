"""Tool descriptor and result models."""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .request import ToolSpec

ToolInvoker = Callable[[dict[str, Any], float | None], Awaitable[Any]]
"""Capability that executes a tool: ``await invoke(arguments, timeout)``."""


@dataclass(frozen=True)
class ToolDescriptor:
    """A callable capability described by data.

    Attributes:
        name: Unique tool name as exposed to the model
        schema: JSON schema for the arguments object
        invoke: Capability reference that performs the call
        description: Human/model readable description
        source: "static" or the name of the tool server that advertised it
        depends_on_prior: Must run after earlier calls of the same phase complete
        fetched_at: Monotonic time the descriptor was discovered (None for static tools)
    """

    name: str
    schema: dict[str, Any]
    invoke: ToolInvoker = field(repr=False, compare=False)
    description: str = ""
    source: str = "static"
    depends_on_prior: bool = False
    fetched_at: float | None = None

    @property
    def is_static(self) -> bool:
        return self.fetched_at is None

    def age(self, now: float | None = None) -> float:
        """Seconds since discovery (0 for static descriptors)."""
        if self.fetched_at is None:
            return 0.0
        return (now if now is not None else time.monotonic()) - self.fetched_at

    def to_spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, parameters=self.schema or {"type": "object", "properties": {}})


@dataclass
class ToolResult:
    """Successful tool execution output."""

    tool_name: str
    content: Any
    execution_time_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)
