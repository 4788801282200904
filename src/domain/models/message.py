"""Message model and content blocks.

Messages are immutable once persisted. Each message points at its parent so
a conversation forms a tree; regenerating an answer adds a sibling instead
of rewriting history.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Union


class MessageRole(str, Enum):
    """Role of the message sender."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class MessageStatus(str, Enum):
    """Completion status of a persisted message."""

    COMPLETED = "completed"
    PARTIAL = "partial"  # Turn was cancelled, content is what arrived before
    ERROR = "error"  # Turn failed, content is what arrived before


# =============================================================================
# Content blocks
# =============================================================================


@dataclass(frozen=True)
class TextBlock:
    """Plain text content."""

    text: str
    type: str = field(default="text", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ToolCallBlock:
    """A tool invocation requested by the model."""

    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    type: str = field(default="tool_call", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "call_id": self.call_id, "name": self.name, "arguments": self.arguments}


@dataclass(frozen=True)
class ToolResultBlock:
    """The outcome of a tool invocation, fed back to the model."""

    call_id: str
    tool_name: str
    content: Any = None
    is_error: bool = False
    error: dict[str, Any] | None = None
    type: str = field(default="tool_result", init=False)

    def content_as_text(self) -> str:
        """Render the result the way providers expect tool output (a string)."""
        if self.is_error:
            message = (self.error or {}).get("message", "Tool execution failed")
            return f"Error: {message}"
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, default=str)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "content": self.content,
            "is_error": self.is_error,
            "error": self.error,
        }


@dataclass(frozen=True)
class AttachmentRef:
    """Reference to an uploaded file held by an external blob store."""

    attachment_id: str
    mime_type: str
    name: str | None = None
    type: str = field(default="attachment_ref", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "attachment_id": self.attachment_id, "mime_type": self.mime_type, "name": self.name}


ContentBlock = Union[TextBlock, ToolCallBlock, ToolResultBlock, AttachmentRef]


def content_block_from_dict(data: dict[str, Any]) -> ContentBlock:
    """Rebuild a content block from its serialized form."""
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data.get("text", ""))
    if block_type == "tool_call":
        return ToolCallBlock(call_id=data["call_id"], name=data["name"], arguments=data.get("arguments") or {})
    if block_type == "tool_result":
        return ToolResultBlock(
            call_id=data["call_id"],
            tool_name=data["tool_name"],
            content=data.get("content"),
            is_error=data.get("is_error", False),
            error=data.get("error"),
        )
    if block_type == "attachment_ref":
        return AttachmentRef(attachment_id=data["attachment_id"], mime_type=data["mime_type"], name=data.get("name"))
    raise ValueError(f"Unknown content block type: {block_type}")


# =============================================================================
# Message
# =============================================================================


@dataclass(frozen=True)
class Message:
    """A single immutable message in a conversation tree.

    Attributes:
        id: Unique message identifier
        conversation_id: Conversation the message belongs to
        role: Who produced the message
        content: Ordered content blocks
        created_at: Creation timestamp
        parent_id: Previous message on the path (None for the root)
        status: Whether the content is complete
        usage: Token accounting reported by the provider (assistant only)
        metadata: Free-form annotations (model, provider, error, notices)
    """

    id: str
    conversation_id: str
    role: MessageRole
    content: tuple[ContentBlock, ...]
    created_at: datetime
    parent_id: str | None = None
    status: MessageStatus = MessageStatus.COMPLETED
    usage: dict[str, int] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [block for block in self.content if isinstance(block, ToolCallBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [block for block in self.content if isinstance(block, ToolResultBlock)]

    @classmethod
    def create(
        cls,
        conversation_id: str,
        role: MessageRole,
        content: list[ContentBlock] | tuple[ContentBlock, ...],
        parent_id: str | None = None,
        status: MessageStatus = MessageStatus.COMPLETED,
        usage: dict[str, int] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "Message":
        """Create a new message with a fresh id and timestamp."""
        return cls(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=tuple(content),
            created_at=datetime.now(UTC),
            parent_id=parent_id,
            status=status,
            usage=dict(usage or {}),
            metadata=dict(metadata or {}),
        )

    @classmethod
    def create_user_message(cls, conversation_id: str, text: str, parent_id: str | None = None) -> "Message":
        return cls.create(conversation_id, MessageRole.USER, [TextBlock(text=text)], parent_id=parent_id)

    @classmethod
    def create_system_message(cls, conversation_id: str, text: str, parent_id: str | None = None) -> "Message":
        return cls.create(conversation_id, MessageRole.SYSTEM, [TextBlock(text=text)], parent_id=parent_id)

    @classmethod
    def create_tool_result_message(cls, conversation_id: str, result: ToolResultBlock, parent_id: str | None = None) -> "Message":
        """Create a tool-role message carrying a single tool result."""
        return cls.create(
            conversation_id,
            MessageRole.TOOL,
            [result],
            parent_id=parent_id,
            metadata={"tool_name": result.tool_name, "call_id": result.call_id},
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert message to dictionary for serialization."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role.value,
            "content": [block.to_dict() for block in self.content],
            "created_at": self.created_at.isoformat(),
            "parent_id": self.parent_id,
            "status": self.status.value,
            "usage": dict(self.usage),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create message from dictionary."""
        created_at = data["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            id=data["id"],
            conversation_id=data["conversation_id"],
            role=MessageRole(data["role"]),
            content=tuple(content_block_from_dict(block) for block in data.get("content", [])),
            created_at=created_at,
            parent_id=data.get("parent_id"),
            status=MessageStatus(data.get("status", "completed")),
            usage=dict(data.get("usage") or {}),
            metadata=dict(data.get("metadata") or {}),
        )
