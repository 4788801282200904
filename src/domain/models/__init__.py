"""Domain models for the agent gateway.

Messages and content blocks are immutable; turn records and drafts are the
only mutable state and are owned by a single orchestrator run.
"""

from .credential import ProviderCredential, RateLimitState
from .delta import TERMINAL_DELTA_TYPES, CanonicalDelta, DeltaType
from .message import (
    AttachmentRef,
    ContentBlock,
    Message,
    MessageRole,
    MessageStatus,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
    content_block_from_dict,
)
from .message_tree import MessageTree
from .request import CanonicalRequest, ProviderRequest, ToolSpec
from .tool import ToolDescriptor, ToolInvoker, ToolResult
from .turn import AssistantDraft, ToolCallRecord, Turn

__all__ = [
    "AssistantDraft",
    "AttachmentRef",
    "CanonicalDelta",
    "CanonicalRequest",
    "ContentBlock",
    "DeltaType",
    "Message",
    "MessageRole",
    "MessageStatus",
    "MessageTree",
    "ProviderCredential",
    "ProviderRequest",
    "RateLimitState",
    "TERMINAL_DELTA_TYPES",
    "TextBlock",
    "ToolCallBlock",
    "ToolCallRecord",
    "ToolDescriptor",
    "ToolInvoker",
    "ToolResult",
    "ToolResultBlock",
    "ToolSpec",
    "Turn",
    "content_block_from_dict",
]
