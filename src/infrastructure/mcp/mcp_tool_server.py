"""Remote tool server speaking MCP over HTTP."""

import logging
from typing import Any

from application.tools import RemoteToolServer
from domain.exceptions import ToolError, ToolErrorKind
from domain.models import ToolSpec

from .http_transport import McpConnectionError, McpHttpTransport, McpProtocolError, McpTimeoutError

logger = logging.getLogger(__name__)


class McpToolServer(RemoteToolServer):
    """Adapts an MCP HTTP transport to the RemoteToolServer contract."""

    def __init__(self, name: str, transport: McpHttpTransport, sequential: bool = False) -> None:
        self._name = name
        self._transport = transport
        self._sequential = sequential

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "McpToolServer":
        """Build from one ``tool_servers`` settings entry."""
        transport = McpHttpTransport(
            server_url=config["url"],
            timeout=float(config.get("timeout", 30.0)),
            headers=config.get("headers") or {},
        )
        return cls(name=config["name"], transport=transport, sequential=bool(config.get("sequential", False)))

    @property
    def name(self) -> str:
        return self._name

    @property
    def sequential(self) -> bool:
        return self._sequential

    async def discover(self) -> list[ToolSpec]:
        try:
            definitions = await self._transport.list_tools()
        except (McpConnectionError, McpTimeoutError, McpProtocolError) as e:
            # Drop the connection so the next discovery performs a fresh handshake
            await self._transport.disconnect()
            raise ToolError(f"Discovery failed on tool server '{self._name}': {e}", kind=ToolErrorKind.UNAVAILABLE, details={"server": self._name}) from e

        return [ToolSpec(name=definition.name, description=definition.description, parameters=definition.input_schema if isinstance(definition.input_schema, dict) and definition.input_schema else {"type": "object", "properties": {}}) for definition in definitions]

    async def execute(self, tool_name: str, arguments: dict[str, Any], timeout: float | None = None) -> Any:
        try:
            result = await self._transport.call_tool(tool_name, arguments, timeout=timeout)
        except McpTimeoutError as e:
            raise ToolError(str(e), kind=ToolErrorKind.TIMEOUT, tool_name=tool_name) from e
        except McpConnectionError as e:
            await self._transport.disconnect()
            raise ToolError(str(e), kind=ToolErrorKind.UNAVAILABLE, tool_name=tool_name) from e
        except McpProtocolError as e:
            raise ToolError(str(e), kind=ToolErrorKind.EXECUTION, tool_name=tool_name) from e

        if result.is_error:
            raise ToolError(result.get_text() or f"Tool '{tool_name}' reported an error", kind=ToolErrorKind.EXECUTION, tool_name=tool_name)
        return result.to_tool_content()

    async def close(self) -> None:
        await self._transport.disconnect()
