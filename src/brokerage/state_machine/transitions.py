"""Transition map defining all valid (state, event) -> state mappings."""

from enum import StrEnum

from brokerage.domain.types import SessionStatus


class SessionEvent(StrEnum):
    """Events that can trigger state transitions in a session."""

    RECEIVE_QUOTE = "receive_quote"
    PRESENT = "present"
    SELECT_QUOTE = "select_quote"
    CANCEL = "cancel"
    TIMEOUT = "timeout"
    EXTEND = "extend"
    FAIL = "fail"


# States that still accept events.
ACTIVE_STATES: frozenset[SessionStatus] = frozenset(
    {SessionStatus.SEARCHING, SessionStatus.NEGOTIATING, SessionStatus.PRESENTING}
)

# States that reject all events -- no outgoing transitions allowed.
TERMINAL_STATES: frozenset[SessionStatus] = frozenset(
    {
        SessionStatus.COMPLETED,
        SessionStatus.TIMEOUT,
        SessionStatus.CANCELLED,
        SessionStatus.ERROR,
    }
)

# All valid (current_state, event_string) -> next_state mappings.
# Any pair not in this dict is an invalid transition.
TRANSITIONS: dict[tuple[SessionStatus, str], SessionStatus] = {
    (SessionStatus.SEARCHING, SessionEvent.RECEIVE_QUOTE): SessionStatus.NEGOTIATING,
    (SessionStatus.NEGOTIATING, SessionEvent.PRESENT): SessionStatus.PRESENTING,
}

# Events every active state accepts.
for _state in ACTIVE_STATES:
    TRANSITIONS[(_state, SessionEvent.SELECT_QUOTE)] = SessionStatus.COMPLETED
    TRANSITIONS[(_state, SessionEvent.CANCEL)] = SessionStatus.CANCELLED
    TRANSITIONS[(_state, SessionEvent.TIMEOUT)] = SessionStatus.TIMEOUT
    TRANSITIONS[(_state, SessionEvent.FAIL)] = SessionStatus.ERROR
    # Extending the deadline keeps the session where it is.
    TRANSITIONS[(_state, SessionEvent.EXTEND)] = _state
del _state
