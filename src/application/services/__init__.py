"""Application services package.

Contains the turn-level services: cancellation, retry/failover, conversation
state and per-conversation serialization.

ChatService lives in ``application.services.chat_service``; it depends on
the orchestrator, which itself depends on this package.
"""

from .cancellation import CancellationToken, run_cancellable
from .conversation_state import ConversationStateManager
from .retry_controller import FailoverTarget, RetryFailoverController, RetryPolicy
from .turn_coordinator import TurnConflictPolicy, TurnCoordinator

__all__ = [
    "CancellationToken",
    "run_cancellable",
    "ConversationStateManager",
    "FailoverTarget",
    "RetryFailoverController",
    "RetryPolicy",
    "TurnConflictPolicy",
    "TurnCoordinator",
]
