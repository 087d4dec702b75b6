"""Tests for the SessionStateMachine class."""

from __future__ import annotations

import pytest

from brokerage.domain.errors import InvalidTransitionError
from brokerage.domain.types import SessionStatus
from brokerage.state_machine.machine import SessionStateMachine
from brokerage.state_machine.transitions import TERMINAL_STATES, SessionEvent


class TestTrigger:
    """Applying events moves the machine and records history."""

    def test_happy_path_to_completed(self) -> None:
        sm = SessionStateMachine()
        assert sm.trigger(SessionEvent.RECEIVE_QUOTE) is SessionStatus.NEGOTIATING
        assert sm.trigger(SessionEvent.PRESENT) is SessionStatus.PRESENTING
        assert sm.trigger(SessionEvent.SELECT_QUOTE) is SessionStatus.COMPLETED
        assert sm.is_terminal
        assert [event for _, event, _ in sm.history] == [
            "receive_quote",
            "present",
            "select_quote",
        ]

    def test_extend_records_self_transition(self) -> None:
        sm = SessionStateMachine(SessionStatus.NEGOTIATING)
        assert sm.trigger(SessionEvent.EXTEND) is SessionStatus.NEGOTIATING
        assert sm.history == [
            (SessionStatus.NEGOTIATING, "extend", SessionStatus.NEGOTIATING)
        ]

    def test_invalid_event_leaves_state_unchanged(self) -> None:
        sm = SessionStateMachine()
        with pytest.raises(InvalidTransitionError) as exc_info:
            sm.trigger(SessionEvent.PRESENT)
        assert exc_info.value.current_state is SessionStatus.SEARCHING
        assert sm.state is SessionStatus.SEARCHING
        assert sm.history == []


class TestTerminalStates:
    @pytest.mark.parametrize("state", sorted(TERMINAL_STATES))
    @pytest.mark.parametrize("event", list(SessionEvent))
    def test_terminal_rejects_everything(self, state: SessionStatus, event: SessionEvent) -> None:
        sm = SessionStateMachine.from_snapshot(state)
        with pytest.raises(InvalidTransitionError):
            sm.peek(event)

    @pytest.mark.parametrize("state", sorted(TERMINAL_STATES))
    def test_terminal_has_no_valid_events(self, state: SessionStatus) -> None:
        assert SessionStateMachine.from_snapshot(state).get_valid_events() == []


class TestPeekAndSnapshot:
    def test_peek_does_not_transition(self) -> None:
        sm = SessionStateMachine.from_snapshot(SessionStatus.PRESENTING)
        assert sm.peek(SessionEvent.TIMEOUT) is SessionStatus.TIMEOUT
        assert sm.state is SessionStatus.PRESENTING

    def test_from_snapshot_copies_history(self) -> None:
        history = [(SessionStatus.SEARCHING, "receive_quote", SessionStatus.NEGOTIATING)]
        sm = SessionStateMachine.from_snapshot(SessionStatus.NEGOTIATING, history)
        history.clear()
        assert len(sm.history) == 1

    def test_valid_events_from_searching(self) -> None:
        assert SessionStateMachine().get_valid_events() == [
            "cancel",
            "extend",
            "fail",
            "receive_quote",
            "select_quote",
            "timeout",
        ]
