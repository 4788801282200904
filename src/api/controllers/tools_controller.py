"""Tools API controller.

Provides endpoints for:
- Listing the tools offered to the model (static and discovered)
- Forcing a re-discovery of remote tool servers
"""

from typing import Optional

from classy_fastapi.decorators import get, post
from fastapi import Query
from neuroglia.dependency_injection import ServiceProviderBase
from neuroglia.mapping import Mapper
from neuroglia.mediation import Mediator
from neuroglia.mvc import ControllerBase

from application.queries import GetToolsQuery
from application.tools import ToolRegistry


class ToolsController(ControllerBase):
    """Controller for the tool catalogue."""

    def __init__(self, service_provider: ServiceProviderBase, mapper: Mapper, mediator: Mediator):
        super().__init__(service_provider, mapper, mediator)

    @get("/")
    async def list_tools(self, source: Optional[str] = Query(None, description='Filter by source ("static" or a tool server name)')):
        """List tools, refreshing stale discovery caches first."""
        result = await self.mediator.execute_async(GetToolsQuery(source=source))
        return self.process(result)

    @post("/refresh")
    async def refresh_tools(self):
        """Re-discover tools from every remote tool server.

        A server that fails discovery contributes no tools until the next
        successful refresh.
        """
        registry = self.service_provider.get_required_service(ToolRegistry)
        await registry.refresh(force=True)
        tools = await registry.list_tools()
        return {
            "servers": registry.server_names,
            "tool_count": len(tools),
            "tools": [tool.name for tool in tools],
        }
