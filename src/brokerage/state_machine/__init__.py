"""Session state machine with transition validation."""

from brokerage.state_machine.machine import SessionStateMachine
from brokerage.state_machine.transitions import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    TRANSITIONS,
    SessionEvent,
)

__all__ = [
    "ACTIVE_STATES",
    "SessionEvent",
    "SessionStateMachine",
    "TERMINAL_STATES",
    "TRANSITIONS",
]
