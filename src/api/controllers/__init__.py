"""API controllers package."""

from .chat_controller import ChatController
from .conversations_controller import ConversationsController
from .tools_controller import ToolsController
from .websocket_controller import WebSocketController

__all__ = [
    "ChatController",
    "ConversationsController",
    "ToolsController",
    "WebSocketController",
]
