"""Application queries package."""

from .get_active_path_query import GetActivePathQuery, GetActivePathQueryHandler, GetMessageQuery, GetMessageQueryHandler
from .get_tools_query import GetToolsQuery, GetToolsQueryHandler

__all__ = [
    # Conversation queries
    "GetActivePathQuery",
    "GetActivePathQueryHandler",
    "GetMessageQuery",
    "GetMessageQueryHandler",
    # Tool queries
    "GetToolsQuery",
    "GetToolsQueryHandler",
]
