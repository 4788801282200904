"""Integration layer repositories package.

Contains MessageStore implementations.
These implement the abstract interfaces defined in domain/repositories/.
"""

from .in_memory_message_store import InMemoryMessageStore
from .motor_message_store import MotorMessageStore

__all__ = [
    "InMemoryMessageStore",
    "MotorMessageStore",
]
