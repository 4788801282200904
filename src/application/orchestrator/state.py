"""Agent turn state machine.

States:
    IDLE → MODEL_CALL → (TOOL_DISPATCH → MODEL_CALL)* → FINALIZING → DONE
    any non-terminal state → FAILED | CANCELLED
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from domain.exceptions import TurnStateError

log = logging.getLogger(__name__)


class TurnState(str, Enum):
    """Agent loop states."""

    IDLE = "idle"
    MODEL_CALL = "model_call"
    TOOL_DISPATCH = "tool_dispatch"
    FINALIZING = "finalizing"

    # Terminal states
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TurnState.DONE, TurnState.FAILED, TurnState.CANCELLED})

_VALID_TRANSITIONS: dict[TurnState, set[TurnState]] = {
    TurnState.IDLE: {TurnState.MODEL_CALL, TurnState.FAILED, TurnState.CANCELLED},
    TurnState.MODEL_CALL: {TurnState.TOOL_DISPATCH, TurnState.FINALIZING, TurnState.FAILED, TurnState.CANCELLED},
    TurnState.TOOL_DISPATCH: {TurnState.MODEL_CALL, TurnState.FINALIZING, TurnState.FAILED, TurnState.CANCELLED},
    TurnState.FINALIZING: {TurnState.DONE, TurnState.FAILED, TurnState.CANCELLED},
    TurnState.DONE: set(),
    TurnState.FAILED: set(),
    TurnState.CANCELLED: set(),
}


@dataclass
class StateTransition:
    """Record of a state transition."""

    from_state: TurnState
    to_state: TurnState
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    reason: str | None = None


class TurnStateMachine:
    """Tracks the state of one turn and its transition history."""

    def __init__(self, turn_id: str, initial_state: TurnState = TurnState.IDLE):
        self._turn_id = turn_id
        self._state = initial_state
        self._history: list[StateTransition] = []

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def history(self) -> list[StateTransition]:
        return self._history.copy()

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def can_transition_to(self, new_state: TurnState) -> bool:
        return new_state in _VALID_TRANSITIONS.get(self._state, set())

    def transition_to(self, new_state: TurnState, reason: str | None = None) -> None:
        """Move to ``new_state``.

        Raises:
            TurnStateError: If the transition is not allowed from the current state
        """
        if not self.can_transition_to(new_state):
            raise TurnStateError(
                f"Invalid turn transition: {self._state.value} → {new_state.value} (valid targets: {sorted(s.value for s in _VALID_TRANSITIONS.get(self._state, set()))})",
                turn_id=self._turn_id,
            )
        old_state = self._state
        self._state = new_state
        self._history.append(StateTransition(from_state=old_state, to_state=new_state, reason=reason))
        log.debug(f"Turn {self._turn_id}: {old_state.value} → {new_state.value}" + (f" (reason: {reason})" if reason else ""))

    def __repr__(self) -> str:
        return f"TurnStateMachine(state={self._state.value}, transitions={len(self._history)})"
