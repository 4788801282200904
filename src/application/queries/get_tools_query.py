"""Tool catalog query."""

import logging
from dataclasses import dataclass
from typing import Any

from neuroglia.core import OperationResult
from neuroglia.mediation import Query, QueryHandler

from application.tools import ToolRegistry

log = logging.getLogger(__name__)


@dataclass
class GetToolsQuery(Query[OperationResult[list[dict[str, Any]]]]):
    """Query to list the tools currently offered to the model.

    Static tools are listed first, then tools discovered from remote servers.
    A stale discovery cache is refreshed first.
    """

    source: str | None = None
    """Only list tools from this source ("static" or a tool server name)."""


class GetToolsQueryHandler(QueryHandler[GetToolsQuery, OperationResult[list[dict[str, Any]]]]):
    """Handler for GetToolsQuery."""

    def __init__(self, tool_registry: ToolRegistry):
        super().__init__()
        self.tool_registry = tool_registry

    async def handle_async(self, request: GetToolsQuery) -> OperationResult[list[dict[str, Any]]]:
        try:
            tools = await self.tool_registry.list_tools()
        except Exception as e:
            log.exception(f"Error listing tools: {e}")
            return self.internal_server_error(f"Failed to list tools: {str(e)}")

        if request.source is not None:
            tools = [tool for tool in tools if tool.source == request.source]
        return self.ok(
            [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.schema,
                    "source": tool.source,
                    "depends_on_prior": tool.depends_on_prior,
                }
                for tool in tools
            ]
        )
