"""Agent orchestrator: the turn state machine and its configuration."""

from .agent_orchestrator import AgentOrchestrator, TurnEventSink, TurnOutcome
from .config import OrchestratorConfig, ToolDispatchMode, ToolTimeoutPolicy
from .state import TERMINAL_STATES, StateTransition, TurnState, TurnStateMachine

__all__ = [
    "AgentOrchestrator",
    "OrchestratorConfig",
    "StateTransition",
    "TERMINAL_STATES",
    "ToolDispatchMode",
    "ToolTimeoutPolicy",
    "TurnEventSink",
    "TurnOutcome",
    "TurnState",
    "TurnStateMachine",
]
