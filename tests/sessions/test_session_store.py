"""Tests for SessionStore guarded writes and queries."""

from __future__ import annotations

from datetime import timedelta

import pytest

from brokerage.domain.errors import NotFoundError
from brokerage.domain.types import FlowType, SessionStatus
from brokerage.quotes.store import QuoteStore
from brokerage.sessions.engine import SessionEngine
from brokerage.sessions.store import SessionStore
from brokerage.state.db import Database
from brokerage.state_machine.transitions import SessionEvent


class TestCompareAndSet:
    """The guard only matches the exact snapshot a caller decided from."""

    def test_stale_snapshot_loses(
        self, db: Database, sessions: SessionStore, engine: SessionEngine
    ) -> None:
        snapshot = engine.create_session("req-1", FlowType.NEARBY_DRIVERS, "driver_broker")
        engine.extend_deadline(snapshot.id)

        with db.transaction() as conn:
            applied = sessions.compare_and_set(
                conn, snapshot, {"status": SessionStatus.CANCELLED}, SessionEvent.CANCEL
            )

        assert applied is False
        assert sessions.get(snapshot.id).status is SessionStatus.SEARCHING

    def test_fresh_snapshot_wins_and_records_transition(
        self, db: Database, sessions: SessionStore, engine: SessionEngine
    ) -> None:
        snapshot = engine.create_session("req-1", FlowType.NEARBY_DRIVERS, "driver_broker")

        with db.transaction() as conn:
            applied = sessions.compare_and_set(
                conn,
                snapshot,
                {"status": SessionStatus.CANCELLED, "cancellation_reason": "changed mind"},
                SessionEvent.CANCEL,
                actor="req-1",
            )

        assert applied is True
        [transition] = sessions.transitions(snapshot.id)
        assert transition.from_status is SessionStatus.SEARCHING
        assert transition.to_status is SessionStatus.CANCELLED
        assert transition.event == "cancel"
        assert transition.actor == "req-1"

    def test_require_no_selection(
        self, db: Database, sessions: SessionStore, engine: SessionEngine
    ) -> None:
        snapshot = engine.create_session("req-1", FlowType.NEARBY_DRIVERS, "driver_broker")
        with db.transaction() as conn:
            conn.execute("UPDATE sessions SET selected_quote_id = 'q' WHERE id = ?", (snapshot.id,))
            applied = sessions.compare_and_set(
                conn,
                snapshot,
                {"status": SessionStatus.COMPLETED},
                SessionEvent.SELECT_QUOTE,
                require_no_selection=True,
            )
        assert applied is False

    def test_only_transition_columns_writable(
        self, db: Database, sessions: SessionStore, engine: SessionEngine
    ) -> None:
        snapshot = engine.create_session("req-1", FlowType.NEARBY_DRIVERS, "driver_broker")
        with pytest.raises(ValueError, match="requester_id"), db.transaction() as conn:
            sessions.compare_and_set(conn, snapshot, {"requester_id": "x"}, SessionEvent.EXTEND)


class TestQueries:
    def test_get_unknown(self, sessions: SessionStore) -> None:
        with pytest.raises(NotFoundError):
            sessions.get("nope")

    def test_list_due_includes_exact_deadline(
        self, sessions: SessionStore, engine: SessionEngine, clock
    ) -> None:
        session = engine.create_session(
            "req-1", FlowType.NEARBY_DRIVERS, "driver_broker", sla_minutes=1
        )
        assert sessions.list_due(session.deadline_at - timedelta(microseconds=1)) == []
        assert [s.id for s in sessions.list_due(session.deadline_at)] == [session.id]

    def test_list_expiring_window(
        self, sessions: SessionStore, engine: SessionEngine, clock
    ) -> None:
        short = engine.create_session(
            "req-1", FlowType.NEARBY_DRIVERS, "driver_broker", sla_minutes=1
        )
        engine.create_session("req-2", FlowType.NEARBY_DRIVERS, "driver_broker", sla_minutes=10)
        engine.submit_quote(short.id, "+250788000001")

        expiring = sessions.list_expiring(clock(), timedelta(minutes=2))

        assert [(s.id, n) for s, n in expiring] == [(short.id, 1)]

    def test_list_expiring_counts_only_live_quotes(
        self, sessions: SessionStore, quotes: QuoteStore, engine: SessionEngine, clock
    ) -> None:
        session = engine.create_session(
            "req-1", FlowType.NEARBY_DRIVERS, "driver_broker", sla_minutes=2
        )
        soon = clock() + timedelta(seconds=30)
        engine.submit_quote(session.id, "+250788000001", expires_at=soon)
        engine.submit_quote(session.id, "+250788000002")
        clock.advance(seconds=30)
        quotes.mark_expired(clock())

        [(expiring, live)] = sessions.list_expiring(clock(), timedelta(minutes=2))

        assert expiring.id == session.id
        assert live == 1

    def test_list_sessions_filters(self, sessions: SessionStore, engine: SessionEngine) -> None:
        a = engine.create_session("req-1", FlowType.NEARBY_DRIVERS, "driver_broker")
        engine.create_session("req-1", FlowType.AI_WAITER, "waiter")
        engine.create_session("req-2", FlowType.NEARBY_DRIVERS, "driver_broker")
        engine.cancel(a.id)

        assert len(sessions.list_sessions()) == 3
        assert len(sessions.list_sessions(requester_id="req-1")) == 2
        assert [s.id for s in sessions.list_sessions(status=SessionStatus.CANCELLED)] == [a.id]
        assert len(sessions.list_sessions(flow_type=FlowType.AI_WAITER)) == 1
        assert len(sessions.list_sessions(agent_type="driver_broker", limit=1)) == 1

    def test_kpis(self, sessions: SessionStore, engine: SessionEngine, sweeper, clock) -> None:
        done = engine.create_session("r1", FlowType.NEARBY_DRIVERS, "driver_broker")
        quote = engine.submit_quote(done.id, "+1")
        engine.select_quote(done.id, quote.id)
        cancelled = engine.create_session("r2", FlowType.NEARBY_DRIVERS, "driver_broker")
        engine.cancel(cancelled.id)
        engine.create_session("r3", FlowType.NEARBY_DRIVERS, "driver_broker", sla_minutes=1)
        engine.create_session("r4", FlowType.NEARBY_DRIVERS, "waiter", sla_minutes=10)
        clock.advance(minutes=2)
        sweeper.sweep_expired()

        kpis = sessions.kpis()
        assert kpis["total_sessions"] == 4
        assert kpis["active_sessions"] == 1
        assert kpis["completed_sessions"] == 1
        assert kpis["timeout_sessions"] == 1
        assert kpis["cancelled_sessions"] == 1
        assert kpis["timeout_rate"] == "33.3"
        assert kpis["acceptance_rate"] == "33.3"

        waiter = sessions.kpis("waiter")
        assert waiter["total_sessions"] == 1
        assert waiter["timeout_rate"] == "0.0"
