"""SessionStateMachine class with trigger, history, and valid_events."""

from __future__ import annotations

from brokerage.domain.errors import InvalidTransitionError
from brokerage.domain.types import SessionStatus
from brokerage.state_machine.transitions import TERMINAL_STATES, TRANSITIONS


class SessionStateMachine:
    """Finite state machine governing the session lifecycle.

    The machine is pure: it decides which status an event leads to and keeps
    an in-memory history.  Persisting the outcome is the job of the session
    store, which applies it as a single guarded write so that two actors
    deciding from the same snapshot cannot both succeed.

    Usage::

        sm = SessionStateMachine.from_snapshot(session.status)
        target = sm.trigger("select_quote")   # -> COMPLETED (terminal)
    """

    def __init__(
        self,
        initial_state: SessionStatus = SessionStatus.SEARCHING,
    ) -> None:
        self._state: SessionStatus = initial_state
        self._history: list[tuple[SessionStatus, str, SessionStatus]] = []

    @classmethod
    def from_snapshot(
        cls,
        state: SessionStatus,
        history: list[tuple[SessionStatus, str, SessionStatus]] | None = None,
    ) -> SessionStateMachine:
        """Reconstruct a state machine from a persisted snapshot.

        Args:
            state: The session status to restore.
            history: Optional transition history as ``(from, event, to)``
                     tuples in chronological order.

        Returns:
            A ``SessionStateMachine`` positioned at *state*.
        """
        instance = cls(initial_state=state)
        instance._history = list(history or [])
        return instance

    @property
    def state(self) -> SessionStatus:
        """Return the current session status."""
        return self._state

    @property
    def is_terminal(self) -> bool:
        """Return True if the machine is in a terminal state."""
        return self._state in TERMINAL_STATES

    @property
    def history(self) -> list[tuple[SessionStatus, str, SessionStatus]]:
        """Return a copy of the transition history."""
        return list(self._history)

    def peek(self, event: str) -> SessionStatus:
        """Return the status *event* would lead to without applying it.

        Raises:
            InvalidTransitionError: If the event is not allowed from the
                current state, or if the machine is in a terminal state.
        """
        if self.is_terminal:
            raise InvalidTransitionError(self._state, event)

        key = (self._state, event)
        if key not in TRANSITIONS:
            raise InvalidTransitionError(self._state, event)
        return TRANSITIONS[key]

    def trigger(self, event: str) -> SessionStatus:
        """Apply an event to the current state and transition.

        Args:
            event: The event string (e.g. ``"receive_quote"``).

        Returns:
            The new state after the transition.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
        """
        new_state = self.peek(event)
        self._history.append((self._state, event, new_state))
        self._state = new_state
        return new_state

    def get_valid_events(self) -> list[str]:
        """Return a sorted list of events valid from the current state."""
        if self.is_terminal:
            return []
        return sorted(event for state, event in TRANSITIONS if state == self._state)
