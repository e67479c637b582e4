from enum import Enum
from typing import List
from dataclasses import dataclass


class TournamentState(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"


class TransitionError(Exception):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


@dataclass
class Transition:
    from_state: TournamentState
    to_state: TournamentState
    action: str


class TournamentStateMachine:
    # Status only moves forward; once active the roster is frozen
    TRANSITIONS = [
        Transition(TournamentState.UPCOMING, TournamentState.ACTIVE, "start"),
        Transition(TournamentState.ACTIVE, TournamentState.COMPLETED, "complete"),
    ]

    ALLOWED_ACTIONS = {
        TournamentState.UPCOMING: ["edit", "register", "unregister", "start", "delete"],
        TournamentState.ACTIVE: ["edit", "complete"],
        TournamentState.COMPLETED: ["view"],
    }

    def __init__(self, initial_state: TournamentState = TournamentState.UPCOMING):
        self._state = initial_state
        self._history: List[tuple] = []

    @property
    def state(self) -> TournamentState:
        return self._state

    @property
    def allowed_actions(self) -> List[str]:
        return self.ALLOWED_ACTIONS.get(self._state, [])

    def can_transition(self, action: str) -> bool:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                return True
        return False

    def can_perform(self, action: str) -> bool:
        return action in self.allowed_actions

    def transition(self, action: str) -> TournamentState:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                old_state = self._state
                self._state = t.to_state
                self._history.append((old_state, action, self._state))
                return self._state

        raise TransitionError(
            self._state.value,
            "unknown",
            f"No valid transition for action '{action}' from state '{self._state.value}'"
        )

    def get_history(self) -> List[tuple]:
        return self._history.copy()

    @classmethod
    def from_state_string(cls, state_str: str) -> "TournamentStateMachine":
        # Unknown strings are treated as completed so nothing can mutate them
        try:
            state = TournamentState(state_str)
        except ValueError:
            state = TournamentState.COMPLETED
        return cls(initial_state=state)
