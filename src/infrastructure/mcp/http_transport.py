"""MCP HTTP transport for remote tool servers.

JSON-RPC 2.0 requests are POSTed to ``{server_url}/mcp``. Servers may answer
with plain JSON or with a single SSE-formatted event (Streamable HTTP).
"""

import asyncio
import json
import logging
from typing import Any

import httpx

from .models import MCP_PROTOCOL_VERSION, McpServerInfo, McpToolDefinition, McpToolResult

logger = logging.getLogger(__name__)


class McpTransportError(Exception):
    """Base exception for MCP transport errors."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class McpConnectionError(McpTransportError):
    """Error establishing or maintaining connection to MCP server."""

    pass


class McpProtocolError(McpTransportError):
    """Error in MCP protocol communication (invalid messages, etc.)."""

    pass


class McpTimeoutError(McpTransportError):
    """Timeout waiting for MCP server response."""

    pass


class McpHttpTransport:
    """HTTP transport for one remote MCP server.

    Usage:
        transport = McpHttpTransport(server_url="http://weather-mcp:9000", timeout=30.0)
        tools = await transport.list_tools()
        result = await transport.call_tool("get_weather", {"city": "Paris"})
        await transport.disconnect()

    ``list_tools`` and ``call_tool`` connect on first use. The handshake
    runs once per connection, guarded by a lock so concurrent callers
    share it.
    """

    def __init__(
        self,
        server_url: str,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize HTTP transport.

        Args:
            server_url: Base URL of the MCP server (e.g., http://localhost:9000)
            timeout: Default request timeout in seconds
            headers: Additional HTTP headers (e.g., for authentication)
            client: Pre-built client (tests inject one backed by httpx.MockTransport)
        """
        self._server_url = server_url.rstrip("/")
        self._timeout = timeout
        self._headers = headers or {}
        self._client = client
        self._owns_client = client is None
        self._server_info: McpServerInfo | None = None
        self._request_id = 0
        self._connect_lock = asyncio.Lock()

    @property
    def server_url(self) -> str:
        return self._server_url

    @property
    def server_info(self) -> McpServerInfo | None:
        return self._server_info

    @property
    def is_connected(self) -> bool:
        return self._server_info is not None and self._client is not None

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self) -> McpServerInfo:
        """Perform the ``initialize`` handshake if not already connected.

        Raises:
            McpConnectionError: If the server cannot be reached
            McpProtocolError: If the handshake is rejected
            McpTimeoutError: If the server does not answer in time
        """
        async with self._connect_lock:
            if self._server_info is not None:
                return self._server_info

            logger.info(f"Connecting to remote MCP server: {self._server_url}")
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=self._timeout)
                self._owns_client = True

            init_result = await self._rpc(
                "initialize",
                {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "clientInfo": {"name": "agent-gateway", "version": "1.0.0"},
                },
            )
            server_info = McpServerInfo.from_dict(init_result)

            # Notification: no response expected, failures are not fatal
            try:
                await self._client.post(
                    f"{self._server_url}/mcp",
                    json={"jsonrpc": "2.0", "method": "notifications/initialized"},
                    headers=self._request_headers(),
                    timeout=5.0,
                )
            except httpx.HTTPError as e:
                logger.debug(f"Initialized notification failed (may be expected): {e}")

            self._server_info = server_info
            logger.info(f"Connected to MCP server: {server_info.name} v{server_info.version}")
            return server_info

    async def disconnect(self) -> None:
        """Close the HTTP connection. Safe to call multiple times."""
        self._server_info = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.debug(f"Disconnected from MCP server: {self._server_url}")

    # =========================================================================
    # Operations
    # =========================================================================

    async def list_tools(self) -> list[McpToolDefinition]:
        await self.connect()
        result = await self._rpc("tools/list")
        tools = result.get("tools") or []
        if not isinstance(tools, list) or not all(isinstance(tool, dict) for tool in tools):
            raise McpProtocolError("MCP tools/list result must hold a list of tool objects")
        return [McpToolDefinition.from_dict(tool) for tool in tools if tool.get("name")]

    async def call_tool(self, tool_name: str, arguments: dict[str, Any], timeout: float | None = None) -> McpToolResult:
        """Execute a tool on the server.

        Tool-level failures come back as results with ``is_error`` set; only
        protocol and transport failures raise.
        """
        await self.connect()
        effective_timeout = timeout or self._timeout
        logger.debug(f"Calling remote tool '{tool_name}' with timeout {effective_timeout}s")
        result = await self._rpc("tools/call", {"name": tool_name, "arguments": arguments}, timeout=effective_timeout)
        return McpToolResult.from_dict(result)

    # =========================================================================
    # JSON-RPC plumbing
    # =========================================================================

    def _request_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json, text/event-stream", **self._headers}

    async def _rpc(self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> dict[str, Any]:
        """Send a JSON-RPC request and return its ``result`` member."""
        if self._client is None:
            raise McpConnectionError("Not connected to MCP server")

        request: dict[str, Any] = {"jsonrpc": "2.0", "id": self._next_request_id(), "method": method}
        if params is not None:
            request["params"] = params
        effective_timeout = timeout or self._timeout

        try:
            response = await self._client.post(f"{self._server_url}/mcp", json=request, headers=self._request_headers(), timeout=effective_timeout)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise McpTimeoutError(f"MCP request '{method}' timed out after {effective_timeout}s", e) from e
        except httpx.HTTPStatusError as e:
            raise McpProtocolError(f"HTTP error {e.response.status_code}: {e.response.text[:500]}", e) from e
        except httpx.RequestError as e:
            raise McpConnectionError(f"Connection error: {e}", e) from e

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type or response.text.startswith("event:"):
            data = self._parse_sse_response(response.text)
        else:
            try:
                data = response.json()
            except json.JSONDecodeError as e:
                raise McpProtocolError(f"Invalid JSON from MCP server: {e}", e) from e

        if not isinstance(data, dict):
            raise McpProtocolError(f"MCP response to '{method}' is not a JSON object")
        if "error" in data:
            error = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            raise McpProtocolError(f"MCP error {error.get('code', 'unknown')}: {error.get('message', 'Unknown error')}")
        result = data.get("result") or {}
        if not isinstance(result, dict):
            raise McpProtocolError(f"MCP result of '{method}' is not a JSON object")
        return result

    @staticmethod
    def _parse_sse_response(text: str) -> dict[str, Any]:
        """Extract the JSON payload of the first ``data:`` line."""
        for line in text.split("\n"):
            line = line.strip()
            if line.startswith("data:"):
                payload = line[5:].strip()
                if payload:
                    try:
                        return json.loads(payload)
                    except json.JSONDecodeError as e:
                        raise McpProtocolError(f"Failed to parse SSE JSON data: {e}") from e
        raise McpProtocolError(f"No data found in SSE response: {text[:200]}")
