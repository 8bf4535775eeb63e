from __future__ import annotations

from typing import Any, Callable

from .errors import InvalidTransition
from .metrics import VOICE
from .models import ACTIVE_STATES, SessionState


S = SessionState

# Allowed transitions, shared by every transport. Terminal moves (to
# disconnected or error) are allowed from every active state.
TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    S.IDLE: frozenset({S.CONNECTING}),
    S.CONNECTING: frozenset({S.LISTENING}),
    S.LISTENING: frozenset({S.USER_SPEAKING, S.PROCESSING}),
    S.USER_SPEAKING: frozenset({S.PROCESSING, S.LISTENING}),
    S.PROCESSING: frozenset({S.SPEAKING, S.LISTENING, S.USER_SPEAKING}),
    S.SPEAKING: frozenset({S.LISTENING, S.USER_SPEAKING}),
    S.ERROR: frozenset({S.CONNECTING, S.DISCONNECTED}),
    S.DISCONNECTED: frozenset({S.CONNECTING}),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    if current == target:
        return False
    if current in ACTIVE_STATES and target in {S.DISCONNECTED, S.ERROR}:
        return True
    return target in TRANSITIONS.get(current, frozenset())


class TurnStateMachine:
    """
    Holds the single current SessionState. Only the session actor calls
    transition(); listeners run synchronously in transition order.
    """

    def __init__(self, *, metrics: Any, initial: SessionState = S.IDLE) -> None:
        self._state = initial
        self._metrics = metrics
        self._listeners: list[Callable[[SessionState, SessionState, str], None]] = []

    @property
    def state(self) -> SessionState:
        return self._state

    def on_change(self, fn: Callable[[SessionState, SessionState, str], None]) -> None:
        self._listeners.append(fn)

    def transition(self, target: SessionState, *, reason: str = "") -> SessionState:
        current = self._state
        if not can_transition(current, target):
            self._metrics.inc(VOICE["invalid_transition_total"], 1)
            raise InvalidTransition(current.value, target.value)
        self._state = target
        self._metrics.inc(f"{VOICE['state_transition_total']}.{target.value}", 1)
        for fn in list(self._listeners):
            fn(current, target, reason)
        return current
