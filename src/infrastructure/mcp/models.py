"""MCP protocol payloads used by the tool server client."""

from dataclasses import dataclass, field
from typing import Any

MCP_PROTOCOL_VERSION = "2024-11-05"


@dataclass
class McpServerInfo:
    """Server identity returned by the ``initialize`` handshake."""

    name: str
    version: str
    protocol_version: str = MCP_PROTOCOL_VERSION

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "McpServerInfo":
        server_info = data.get("serverInfo") or {}
        return cls(
            name=server_info.get("name", "unknown"),
            version=server_info.get("version", "unknown"),
            protocol_version=data.get("protocolVersion", MCP_PROTOCOL_VERSION),
        )


@dataclass
class McpToolDefinition:
    """One entry of a ``tools/list`` response."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "McpToolDefinition":
        return cls(
            name=data.get("name", ""),
            description=data.get("description", ""),
            input_schema=data.get("inputSchema") or {},
        )


@dataclass
class McpContent:
    """Content block within a tool result (text, image, resource)."""

    type: str
    text: str | None = None
    data: str | None = None
    mime_type: str | None = None
    uri: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "McpContent":
        return cls(
            type=data.get("type", "text"),
            text=data.get("text"),
            data=data.get("data"),
            mime_type=data.get("mimeType"),
            uri=data.get("uri"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type}
        if self.text is not None:
            result["text"] = self.text
        if self.data is not None:
            result["data"] = self.data
        if self.mime_type is not None:
            result["mimeType"] = self.mime_type
        if self.uri is not None:
            result["uri"] = self.uri
        return result


@dataclass
class McpToolResult:
    """Result of a ``tools/call`` request."""

    content: list[McpContent] = field(default_factory=list)
    is_error: bool = False
    structured_content: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "McpToolResult":
        return cls(
            content=[McpContent.from_dict(item) for item in data.get("content") or []],
            is_error=bool(data.get("isError", False)),
            structured_content=data.get("structuredContent"),
        )

    def get_text(self) -> str:
        """Combined text of all text content blocks."""
        return "\n".join(item.text or "" for item in self.content if item.type == "text")

    def to_tool_content(self) -> Any:
        """Value handed back to the model as the tool result content."""
        if self.structured_content is not None:
            return self.structured_content
        if self.content and all(item.type == "text" for item in self.content):
            return self.get_text()
        return [item.to_dict() for item in self.content]
