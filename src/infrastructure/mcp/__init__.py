"""MCP (Model Context Protocol) client for remote tool servers."""

from .http_transport import McpConnectionError, McpHttpTransport, McpProtocolError, McpTimeoutError, McpTransportError
from .mcp_tool_server import McpToolServer
from .models import McpContent, McpServerInfo, McpToolDefinition, McpToolResult

__all__ = [
    "McpHttpTransport",
    "McpTransportError",
    "McpConnectionError",
    "McpProtocolError",
    "McpTimeoutError",
    "McpToolServer",
    "McpContent",
    "McpServerInfo",
    "McpToolDefinition",
    "McpToolResult",
]
