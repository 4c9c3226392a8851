import datetime
import logging
from typing import List, Optional, Tuple

from .errors import InvalidTransitionError
from .models import RunState

logger = logging.getLogger(__name__)

_NEXT = {
    RunState.IDLE: RunState.INITIALIZING,
    RunState.INITIALIZING: RunState.AWAITING_RESPONSES,
    RunState.AWAITING_RESPONSES: RunState.SUMMARIZING,
    RunState.SUMMARIZING: RunState.DONE,
}


class RunStateMachine:
    """Coarse state of a whole run: Idle -> Initializing -> AwaitingResponses -> Summarizing -> Done, or Failed."""

    def __init__(self, run_id: str = None):
        self.run_id = run_id
        self.state = RunState.IDLE
        self.failure_reason: Optional[str] = None
        self.history: List[Tuple[RunState, datetime.datetime]] = [(RunState.IDLE, self._now())]

    @staticmethod
    def _now() -> datetime.datetime:
        return datetime.datetime.now(datetime.timezone.utc)

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def _enter(self, state: RunState):
        logger.info(f"Run {self.run_id}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append((state, self._now()))

    def advance(self, expected: RunState) -> RunState:
        """Move to the state following `expected`, which must be the current state."""
        if self.state != expected or expected not in _NEXT:
            raise InvalidTransitionError(
                f"Run {self.run_id} cannot leave {expected.value}, it is {self.state.value}")
        self._enter(_NEXT[expected])
        return self.state

    def fail(self, reason: str):
        if self.terminal:
            raise InvalidTransitionError(f"Run {self.run_id} is already {self.state.value}")
        self.failure_reason = reason
        logger.error(f"Run {self.run_id} failed: {reason}")
        self._enter(RunState.FAILED)

    def visited(self, state: RunState) -> bool:
        return any(s == state for s, _ in self.history)
