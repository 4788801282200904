"""Turn record: the orchestrator's working unit for one user request."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .message import Message, MessageRole, ToolCallBlock


@dataclass
class ToolCallRecord:
    """A tool call assembled incrementally from tool-call deltas."""

    call_id: str
    name: str
    index: int = 0
    fragments: list[str] = field(default_factory=list)
    completed: bool = False
    truncated: bool = False
    arguments: dict[str, Any] | None = None
    parse_error: str | None = None

    @property
    def raw_arguments(self) -> str:
        return "".join(self.fragments)

    def complete(self, truncated: bool = False) -> None:
        """Mark the call as fully streamed and parse its arguments.

        Argument fragments are only parsed here, once the call is complete.
        """
        self.completed = True
        self.truncated = truncated
        raw = self.raw_arguments.strip()
        if not raw:
            self.arguments = {}
            return
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            self.parse_error = f"Invalid JSON arguments: {e.msg}"
            return
        if not isinstance(parsed, dict):
            self.parse_error = f"Arguments must be a JSON object, got {type(parsed).__name__}"
            return
        self.arguments = parsed

    def to_block(self) -> ToolCallBlock:
        return ToolCallBlock(call_id=self.call_id, name=self.name, arguments=self.arguments or {})


@dataclass
class AssistantDraft:
    """The in-progress assistant message of a turn."""

    text_parts: list[str] = field(default_factory=list)
    tool_calls: dict[str, ToolCallRecord] = field(default_factory=dict)
    finish_reason: str | None = None
    truncated: bool = False
    usage: dict[str, int] = field(default_factory=lambda: {"input_tokens": 0, "output_tokens": 0})

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @property
    def ordered_tool_calls(self) -> list[ToolCallRecord]:
        """Tool calls in the order the model started them."""
        return sorted(self.tool_calls.values(), key=lambda record: record.index)

    @property
    def completed_tool_calls(self) -> list[ToolCallRecord]:
        return [record for record in self.ordered_tool_calls if record.completed and not record.truncated]

    @property
    def is_empty(self) -> bool:
        return not self.text_parts and not self.tool_calls


@dataclass
class Turn:
    """One request/response cycle, possibly spanning several tool rounds.

    Attributes:
        conversation_id: Conversation the turn belongs to
        active_path: Messages driving model context, oldest first
        remaining_tool_calls: Tool-call budget left for this turn
        cancelled: Set once the turn is cancelled
        draft: The open assistant draft, at most one at a time
        usage: Token accounting, monotonic over the life of the turn
        finalized: Set once the final assistant message is persisted
    """

    conversation_id: str
    active_path: list[Message]
    remaining_tool_calls: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    cancelled: bool = False
    draft: AssistantDraft | None = None
    usage: dict[str, int] = field(default_factory=lambda: {"input_tokens": 0, "output_tokens": 0})
    finalized: bool = False
    model_calls: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    messages_created: list[Message] = field(default_factory=list)

    @property
    def leaf_id(self) -> str | None:
        return self.active_path[-1].id if self.active_path else None

    @property
    def has_usable_output(self) -> bool:
        """True when the turn produced assistant text or tool results."""
        if self.draft is not None and self.draft.text:
            return True
        for message in self.messages_created:
            if message.role == MessageRole.ASSISTANT and message.text:
                return True
            if any(not result.is_error for result in message.tool_results):
                return True
        return False
