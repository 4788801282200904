"""Tool registry, invoker and built-in tools."""

from .builtin_tools import register_builtin_tools
from .remote_tool_server import RemoteToolServer
from .tool_registry import ToolRegistry

__all__ = [
    "RemoteToolServer",
    "ToolRegistry",
    "register_builtin_tools",
]
