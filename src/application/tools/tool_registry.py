"""Tool registry and invoker.

Holds two kinds of descriptors:

- static descriptors, registered once at startup (built-in tools)
- dynamic descriptors, discovered from remote tool servers and cached

The dynamic cache is read-mostly. Readers use the current snapshot without
locking; refreshes run under a single-writer lock and publish a new
snapshot by replacing the dict in one assignment.

Invocation validates arguments against the descriptor's JSON schema before
anything is dispatched, bounds the call with a timeout, and maps every
failure onto a ToolError kind.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from opentelemetry import trace

from domain.exceptions import ToolError, ToolErrorKind, ToolNotFoundError
from domain.models import ToolDescriptor, ToolResult
from observability import tool_calls, tool_discovery_failures, tool_discovery_refreshes, tool_errors, tool_execution_time

from .remote_tool_server import RemoteToolServer

if TYPE_CHECKING:
    from neuroglia.hosting.web import WebApplicationBuilder

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any] | Any]


class ToolRegistry:
    """Resolves tool names to descriptors and invokes them."""

    def __init__(
        self,
        servers: list[RemoteToolServer] | None = None,
        cache_ttl: float = 300.0,
        max_staleness: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the registry.

        Args:
            servers: Remote tool servers to discover dynamic tools from
            cache_ttl: Age after which discovered tools are refreshed on listing
            max_staleness: Age after which a descriptor is never invoked without a refresh attempt
            clock: Monotonic clock (injectable for tests)
        """
        if max_staleness < cache_ttl:
            raise ValueError("max_staleness must be >= cache_ttl")
        self._servers: dict[str, RemoteToolServer] = {server.name: server for server in servers or []}
        self._cache_ttl = cache_ttl
        self._max_staleness = max_staleness
        self._clock = clock
        self._static: dict[str, ToolDescriptor] = {}
        self._dynamic: dict[str, ToolDescriptor] = {}
        self._fetched_at: dict[str, float] = {}
        self._refresh_lock = asyncio.Lock()

    # =========================================================================
    # Registration
    # =========================================================================

    def register_static(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._static:
            raise ValueError(f"Static tool '{descriptor.name}' is already registered")
        self._static[descriptor.name] = descriptor
        logger.debug(f"Registered static tool '{descriptor.name}'")

    def register_function(
        self,
        name: str,
        description: str,
        schema: dict[str, Any],
        handler: ToolHandler,
        depends_on_prior: bool = False,
    ) -> ToolDescriptor:
        """Register a local function as a static tool.

        ``handler(arguments)`` may be sync or async. The invoker applies the
        timeout, so the handler ignores it.
        """

        async def invoke(arguments: dict[str, Any], timeout: float | None) -> Any:
            result = handler(arguments)
            if inspect.isawaitable(result):
                result = await result
            return result

        descriptor = ToolDescriptor(name=name, schema=schema, invoke=invoke, description=description, depends_on_prior=depends_on_prior)
        self.register_static(descriptor)
        return descriptor

    def add_server(self, server: RemoteToolServer) -> None:
        self._servers[server.name] = server

    # =========================================================================
    # Discovery
    # =========================================================================

    @property
    def server_names(self) -> list[str]:
        return list(self._servers)

    def _stale_servers(self, max_age: float) -> list[str]:
        now = self._clock()
        return [name for name in self._servers if name not in self._fetched_at or now - self._fetched_at[name] >= max_age]

    async def refresh(self, force: bool = False) -> None:
        """Refresh discovered tools.

        Args:
            force: Refresh every server, not only those past the cache TTL
        """
        if force:
            await self._refresh_servers(list(self._servers), max_age=None)
        else:
            stale = self._stale_servers(self._cache_ttl)
            if stale:
                await self._refresh_servers(stale, max_age=self._cache_ttl)

    async def _refresh_servers(self, names: list[str], max_age: float | None) -> None:
        """Rediscover ``names`` and publish a new snapshot.

        With ``max_age`` set, servers refreshed by a concurrent writer while
        we waited for the lock are skipped.
        """
        async with self._refresh_lock:
            if max_age is not None:
                stale = set(self._stale_servers(max_age))
                names = [name for name in names if name in stale]
            if not names:
                return

            discovered = await asyncio.gather(*(self._discover(self._servers[name]) for name in names))

            snapshot = {tool_name: descriptor for tool_name, descriptor in self._dynamic.items() if descriptor.source not in names}
            for descriptors in discovered:
                for descriptor in descriptors:
                    if descriptor.name in self._static:
                        logger.warning(f"Tool '{descriptor.name}' from '{descriptor.source}' shadows a static tool, ignored")
                        continue
                    existing = snapshot.get(descriptor.name)
                    if existing is not None:
                        logger.warning(f"Tool '{descriptor.name}' offered by both '{existing.source}' and '{descriptor.source}', keeping '{existing.source}'")
                        continue
                    snapshot[descriptor.name] = descriptor
            self._dynamic = snapshot

    async def _discover(self, server: RemoteToolServer) -> list[ToolDescriptor]:
        """Discover one server's tools; a failure yields no tools."""
        fetched_at = self._clock()
        self._fetched_at[server.name] = fetched_at
        tool_discovery_refreshes.add(1, {"server": server.name})
        try:
            specs = await server.discover()
        except ToolError as e:
            tool_discovery_failures.add(1, {"server": server.name})
            logger.warning(f"⚠️ Tool discovery failed for '{server.name}', its tools are unavailable: {e}")
            return []
        except Exception as e:
            tool_discovery_failures.add(1, {"server": server.name})
            logger.exception(f"⚠️ Unexpected discovery error for '{server.name}', its tools are unavailable: {e}")
            return []

        descriptors = [
            ToolDescriptor(
                name=spec.name,
                schema=spec.parameters,
                invoke=self._remote_invoker(server, spec.name),
                description=spec.description,
                source=server.name,
                depends_on_prior=server.sequential,
                fetched_at=fetched_at,
            )
            for spec in specs
        ]
        logger.info(f"🔧 Discovered {len(descriptors)} tools from '{server.name}'")
        return descriptors

    @staticmethod
    def _remote_invoker(server: RemoteToolServer, tool_name: str) -> Callable[[dict[str, Any], float | None], Awaitable[Any]]:
        async def invoke(arguments: dict[str, Any], timeout: float | None) -> Any:
            return await server.execute(tool_name, arguments, timeout)

        return invoke

    # =========================================================================
    # Lookup
    # =========================================================================

    async def list_tools(self) -> list[ToolDescriptor]:
        """All available descriptors, refreshing discovered tools past the cache TTL."""
        await self.refresh()
        return list(self._static.values()) + list(self._dynamic.values())

    def resolve(self, name: str) -> ToolDescriptor:
        """Look up a descriptor by name, static tools first.

        Raises:
            ToolNotFoundError: When no tool has this name
        """
        descriptor = self._static.get(name) or self._dynamic.get(name)
        if descriptor is None:
            raise ToolNotFoundError(name)
        return descriptor

    # =========================================================================
    # Invocation
    # =========================================================================

    async def invoke(self, descriptor: ToolDescriptor, arguments: dict[str, Any], timeout: float | None = None) -> ToolResult:
        """Validate and run a tool call.

        Args:
            descriptor: Resolved descriptor
            arguments: Parsed call arguments
            timeout: Seconds allowed for the call (None = unbounded)

        Raises:
            ToolError: validation, timeout, execution or unavailable
        """
        descriptor = await self._ensure_fresh(descriptor)
        self._validate_arguments(descriptor, arguments)

        start_time = time.monotonic()
        with tracer.start_as_current_span("invoke_tool") as span:
            span.set_attribute("tool.name", descriptor.name)
            span.set_attribute("tool.source", descriptor.source)
            attributes = {"tool": descriptor.name, "source": descriptor.source}
            tool_calls.add(1, attributes)
            try:
                content = await asyncio.wait_for(descriptor.invoke(arguments, timeout), timeout=timeout)
            except asyncio.TimeoutError as e:
                tool_errors.add(1, {**attributes, "kind": ToolErrorKind.TIMEOUT.value})
                span.set_attribute("tool.error", "timeout")
                raise ToolError(f"Tool '{descriptor.name}' timed out after {timeout}s", kind=ToolErrorKind.TIMEOUT, tool_name=descriptor.name) from e
            except ToolError as e:
                tool_errors.add(1, {**attributes, "kind": e.kind.value})
                span.set_attribute("tool.error", str(e))
                if e.tool_name is None:
                    e.tool_name = descriptor.name
                raise
            except Exception as e:
                tool_errors.add(1, {**attributes, "kind": ToolErrorKind.EXECUTION.value})
                span.set_attribute("tool.error", str(e))
                logger.exception(f"Unexpected error executing tool '{descriptor.name}'")
                raise ToolError(f"Tool '{descriptor.name}' failed: {e}", kind=ToolErrorKind.EXECUTION, tool_name=descriptor.name) from e
            finally:
                execution_time_ms = (time.monotonic() - start_time) * 1000
                tool_execution_time.record(execution_time_ms, attributes)
                span.set_attribute("tool.execution_time_ms", execution_time_ms)

        return ToolResult(tool_name=descriptor.name, content=content, execution_time_ms=execution_time_ms, metadata={"source": descriptor.source})

    async def _ensure_fresh(self, descriptor: ToolDescriptor) -> ToolDescriptor:
        """Refresh a discovered descriptor older than the max staleness before use."""
        if descriptor.is_static or descriptor.age(self._clock()) <= self._max_staleness:
            return descriptor

        logger.info(f"Descriptor for '{descriptor.name}' exceeds max staleness, refreshing '{descriptor.source}'")
        if descriptor.source in self._servers:
            await self._refresh_servers([descriptor.source], max_age=self._max_staleness)
        current = self._dynamic.get(descriptor.name)
        if current is None or current.source != descriptor.source:
            raise ToolError(f"Tool '{descriptor.name}' is no longer offered by '{descriptor.source}'", kind=ToolErrorKind.UNAVAILABLE, tool_name=descriptor.name)
        return current

    @staticmethod
    def _validate_arguments(descriptor: ToolDescriptor, arguments: dict[str, Any]) -> None:
        """Validate arguments against the descriptor's JSON schema.

        Raises:
            ToolError: kind=validation, listing up to five errors
        """
        if not descriptor.schema:
            return
        try:
            validator = Draft7Validator(descriptor.schema)
            errors = list(validator.iter_errors(arguments))
        except SchemaError as e:
            raise ToolError(f"Invalid argument schema for '{descriptor.name}': {e.message}", kind=ToolErrorKind.VALIDATION, tool_name=descriptor.name) from e

        if errors:
            error_messages = []
            for error in errors[:5]:
                path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
                error_messages.append(f"{path}: {error.message}")
            raise ToolError(
                f"Argument validation failed: {'; '.join(error_messages)}",
                kind=ToolErrorKind.VALIDATION,
                tool_name=descriptor.name,
                details={"validation_errors": error_messages},
            )

    async def close(self) -> None:
        for server in self._servers.values():
            await server.close()

    # =========================================================================
    # Service Configuration (Neuroglia Pattern)
    # =========================================================================

    @staticmethod
    def configure(builder: "WebApplicationBuilder") -> "WebApplicationBuilder":
        """Build the registry from settings and register it as a singleton."""
        from application.settings import app_settings
        from infrastructure.mcp import McpToolServer

        from .builtin_tools import register_builtin_tools

        log = logging.getLogger(__name__)
        log.info("🔧 Configuring ToolRegistry...")

        servers = [McpToolServer.from_config(config) for config in app_settings.get_tool_server_configs() if config.get("name") and config.get("url")]
        registry = ToolRegistry(
            servers=servers,
            cache_ttl=app_settings.tool_cache_ttl_seconds,
            max_staleness=app_settings.tool_max_staleness_seconds,
        )
        if app_settings.builtin_tools_enabled:
            register_builtin_tools(registry)

        builder.services.add_singleton(ToolRegistry, singleton=registry)
        log.info(f"✅ ToolRegistry configured ({len(servers)} tool servers)")
        return builder
