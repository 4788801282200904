"""Contract for remote tool servers."""

from abc import ABC, abstractmethod
from typing import Any

from domain.models import ToolSpec


class RemoteToolServer(ABC):
    """A network service exposing discoverable, schema-described tools.

    Implementations are in src/infrastructure/mcp/.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Configured server name, used as the descriptor ``source``."""
        ...

    @property
    def sequential(self) -> bool:
        """Whether calls to this server must wait for earlier calls of the same phase."""
        return False

    @abstractmethod
    async def discover(self) -> list[ToolSpec]:
        """List the tools the server currently offers.

        Raises:
            ToolError: kind=unavailable when the server cannot be reached
        """
        ...

    @abstractmethod
    async def execute(self, tool_name: str, arguments: dict[str, Any], timeout: float | None = None) -> Any:
        """Run a tool and return its result content.

        Raises:
            ToolError: timeout, execution or unavailable
        """
        ...

    async def close(self) -> None:
        pass
