"""Tests for the frozen pydantic domain models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from brokerage.domain.models import (
    AgentConfig,
    IdempotencyRecord,
    LedgerAccount,
    Payload,
    Quote,
    Session,
)
from brokerage.domain.types import FlowType, SessionStatus

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _session(**overrides: object) -> Session:
    fields: dict[str, object] = {
        "id": "s-1",
        "requester_id": "req-1",
        "flow_type": FlowType.NEARBY_DRIVERS,
        "agent_type": "driver_broker",
        "started_at": NOW,
        "deadline_at": NOW + timedelta(minutes=5),
    }
    fields.update(overrides)
    return Session(**fields)  # type: ignore[arg-type]


class TestSession:
    """Session construction guards and derived values."""

    def test_defaults(self) -> None:
        session = _session()
        assert session.status is SessionStatus.SEARCHING
        assert session.extensions_count == 0
        assert session.max_extensions == 2
        assert session.request_data == Payload()
        assert session.selected_quote_id is None

    def test_deadline_must_follow_start(self) -> None:
        with pytest.raises(ValidationError, match="deadline_at"):
            _session(deadline_at=NOW)

    def test_extensions_count_bounded_by_max(self) -> None:
        with pytest.raises(ValidationError, match="extensions_count"):
            _session(extensions_count=3, max_extensions=2)

    def test_negative_max_extensions_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _session(max_extensions=-1)

    def test_is_frozen(self) -> None:
        session = _session()
        with pytest.raises(ValidationError):
            session.status = SessionStatus.COMPLETED  # type: ignore[misc]

    def test_deadline_passed_at_exact_deadline(self) -> None:
        session = _session()
        assert not session.deadline_passed(NOW + timedelta(minutes=4, seconds=59))
        assert session.deadline_passed(NOW + timedelta(minutes=5))

    def test_seconds_remaining_counts_down(self) -> None:
        session = _session()
        assert session.seconds_remaining(NOW) == 300
        assert session.seconds_remaining(NOW + timedelta(seconds=290)) == 10

    def test_seconds_remaining_never_negative(self) -> None:
        session = _session()
        assert session.seconds_remaining(NOW + timedelta(hours=1)) == 0

    def test_seconds_remaining_zero_when_terminal(self) -> None:
        session = _session(status=SessionStatus.COMPLETED)
        assert session.is_terminal
        assert session.seconds_remaining(NOW) == 0


class TestQuote:
    def test_vendor_contact_is_stripped(self) -> None:
        quote = Quote(id="q", session_id="s", vendor_contact="  +250700  ", responded_at=NOW)
        assert quote.vendor_contact == "+250700"

    def test_blank_vendor_contact_rejected(self) -> None:
        with pytest.raises(ValidationError, match="vendor_contact"):
            Quote(id="q", session_id="s", vendor_contact="   ", responded_at=NOW)


class TestLedgerAccount:
    def test_negative_balance_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LedgerAccount(profile_id="p", balance=-1)

    def test_negative_pending_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LedgerAccount(profile_id="p", pending=-5)


class TestAgentConfig:
    @pytest.mark.parametrize("field", ["sla_minutes", "fan_out_limit"])
    def test_must_be_positive(self, field: str) -> None:
        with pytest.raises(ValidationError):
            AgentConfig(agent_type="a", **{field: 0})

    def test_zero_extensions_allowed(self) -> None:
        assert AgentConfig(agent_type="a", max_extensions=0).max_extensions == 0


class TestIdempotencyRecord:
    def test_pending_until_status_code_set(self) -> None:
        record = IdempotencyRecord(key="k" * 16, scope="s", request_hash="h", created_at=NOW)
        assert record.is_pending
        done = record.model_copy(update={"status_code": 201, "body": {}, "finalized_at": NOW})
        assert not done.is_pending
