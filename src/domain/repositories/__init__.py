"""Domain repositories package.

Contains abstract persistence interfaces.
Implementations are in src/integration/repositories/.
"""

from .message_store import MessageStore

__all__ = ["MessageStore"]
