"""Tests for the deadline sweeper."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import patch

from brokerage.domain.models import VendorMeta
from brokerage.domain.types import CommissionStatus, FlowType, QuoteStatus, SessionStatus
from brokerage.idempotency.gateway import CommandResult, IdempotencyGateway
from brokerage.ledger.ledger import Ledger
from brokerage.quotes.store import QuoteStore
from brokerage.sessions.engine import SessionEngine
from brokerage.settlement.engine import SettlementEngine
from brokerage.sweeper.sweeper import DeadlineSweeper, SweepReport

DRIVERS = FlowType.NEARBY_DRIVERS


class TestSweepExpired:
    def test_times_out_only_overdue_sessions(
        self, engine: SessionEngine, sweeper: DeadlineSweeper, clock
    ) -> None:
        due = engine.create_session("r1", DRIVERS, "driver_broker", sla_minutes=1)
        later = engine.create_session("r2", DRIVERS, "driver_broker", sla_minutes=5)
        clock.advance(minutes=2)

        assert sweeper.sweep_expired() == [due.id]
        assert engine.get(due.id).status is SessionStatus.TIMEOUT
        assert engine.get(later.id).status is SessionStatus.SEARCHING

    def test_second_sweep_is_a_noop(
        self, engine: SessionEngine, sweeper: DeadlineSweeper, clock
    ) -> None:
        engine.create_session("r1", DRIVERS, "driver_broker", sla_minutes=1)
        clock.advance(minutes=2)
        sweeper.sweep_expired()
        assert sweeper.sweep_expired() == []

    def test_simulated_now(self, engine: SessionEngine, sweeper: DeadlineSweeper, clock) -> None:
        session = engine.create_session("r1", DRIVERS, "driver_broker", sla_minutes=3)
        assert sweeper.sweep_expired(clock() + timedelta(minutes=2)) == []
        assert sweeper.sweep_expired(clock() + timedelta(minutes=3)) == [session.id]

    def test_stale_snapshot_is_skipped(
        self, engine: SessionEngine, sweeper: DeadlineSweeper, sessions, clock
    ) -> None:
        session = engine.create_session("r1", DRIVERS, "driver_broker", sla_minutes=1)
        clock.advance(minutes=2)
        stale = sessions.list_due(clock())

        # The requester extends between the sweeper's read and its write.
        engine.extend_deadline(session.id)
        with patch.object(sessions, "list_due", return_value=stale):
            assert sweeper.sweep_expired() == []
        assert engine.get(session.id).status is SessionStatus.SEARCHING

    def test_unexpected_failure_does_not_stop_the_sweep(
        self, engine: SessionEngine, sweeper: DeadlineSweeper, clock
    ) -> None:
        first = engine.create_session("r1", DRIVERS, "driver_broker", sla_minutes=1)
        second = engine.create_session("r2", DRIVERS, "driver_broker", sla_minutes=2)
        clock.advance(minutes=3)
        original = engine.expire_snapshot

        def _flaky(snapshot, now):
            if snapshot.id == first.id:
                raise RuntimeError("boom")
            return original(snapshot, now)

        with patch.object(engine, "expire_snapshot", side_effect=_flaky):
            assert sweeper.sweep_expired() == [second.id]


class TestListExpiring:
    def test_reports_minutes_and_quote_count(
        self, engine: SessionEngine, sweeper: DeadlineSweeper, clock
    ) -> None:
        session = engine.create_session("r1", DRIVERS, "driver_broker", sla_minutes=2)
        engine.create_session("r2", DRIVERS, "driver_broker", sla_minutes=10)
        engine.submit_quote(session.id, "+1")
        engine.submit_quote(session.id, "+2")
        clock.advance(seconds=50)

        [entry] = sweeper.list_expiring(within_minutes=2)

        assert entry["session_id"] == session.id
        assert entry["requester_id"] == "r1"
        assert entry["status"] == "negotiating"
        assert entry["minutes_remaining"] == 2
        assert entry["quotes_count"] == 2

    def test_default_window_and_rounding(
        self, engine: SessionEngine, sweeper: DeadlineSweeper, clock
    ) -> None:
        engine.create_session("r1", DRIVERS, "driver_broker", sla_minutes=1)
        clock.advance(seconds=59)
        [entry] = sweeper.list_expiring()
        assert entry["minutes_remaining"] == 1

    def test_overdue_sessions_not_listed(
        self, engine: SessionEngine, sweeper: DeadlineSweeper, clock
    ) -> None:
        engine.create_session("r1", DRIVERS, "driver_broker", sla_minutes=1)
        clock.advance(minutes=1)
        assert sweeper.list_expiring() == []


class TestTick:
    def test_full_pass(
        self,
        engine: SessionEngine,
        sweeper: DeadlineSweeper,
        gateway: IdempotencyGateway,
        settlement: SettlementEngine,
        ledger: Ledger,
        quotes: QuoteStore,
        driver: VendorMeta,
        clock,
    ) -> None:
        ledger.open_account("broker-1")
        ledger.open_account(driver.vendor_id or "", initial_balance=5)
        paid_session = engine.create_session(
            "r1",
            DRIVERS,
            "driver_broker",
            metadata={"broker_id": "broker-1", "commission_tokens": 10},
        )
        quote = engine.submit_quote(paid_session.id, "+1", driver)
        engine.select_quote(paid_session.id, quote.id)
        assert settlement.get(paid_session.id).status is CommissionStatus.DUE  # type: ignore[union-attr]
        ledger.apply_delta(driver.vendor_id or "", 20, "top_up")

        overdue = engine.create_session("r2", DRIVERS, "driver_broker", sla_minutes=1)
        lapsing = engine.submit_quote(
            overdue.id, "+2", expires_at=clock() + timedelta(seconds=30)
        )
        gateway.execute(
            "key-for-tick-test-01",
            "sweep",
            {},
            lambda: CommandResult(status_code=200, body={}),
        )
        clock.advance(days=2)

        report = sweeper.tick()

        assert isinstance(report, SweepReport)
        assert report.timed_out == [overdue.id]
        assert report.expired_quotes == [lapsing.id]
        assert report.purged_idempotency_records == 1
        assert len(report.commissions_paid) == 1
        assert quotes.get(lapsing.id).status is QuoteStatus.EXPIRED
        assert settlement.get(paid_session.id).status is CommissionStatus.PAID  # type: ignore[union-attr]

    def test_tick_without_optional_services(
        self, engine: SessionEngine, sessions, quotes: QuoteStore, clock
    ) -> None:
        sweeper = DeadlineSweeper(engine, sessions, quotes, clock=clock)
        report = sweeper.tick()
        assert report == SweepReport()


class TestRunForever:
    def test_stops_when_event_set(self, sweeper: DeadlineSweeper) -> None:
        async def _run() -> int:
            stop = asyncio.Event()
            calls = 0
            original = sweeper.tick

            def _counting_tick(now=None):
                nonlocal calls
                calls += 1
                if calls >= 2:
                    loop.call_soon_threadsafe(stop.set)
                return original(now)

            loop = asyncio.get_running_loop()
            with patch.object(sweeper, "tick", side_effect=_counting_tick):
                await asyncio.wait_for(sweeper.run_forever(0.01, stop), timeout=5)
            return calls

        assert asyncio.run(_run()) == 2

    def test_failing_tick_keeps_looping(self, sweeper: DeadlineSweeper) -> None:
        async def _run() -> int:
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            calls = 0

            def _tick(now=None):
                nonlocal calls
                calls += 1
                if calls == 1:
                    raise RuntimeError("database is locked")
                loop.call_soon_threadsafe(stop.set)
                return SweepReport()

            with patch.object(sweeper, "tick", side_effect=_tick):
                await asyncio.wait_for(sweeper.run_forever(0.01, stop), timeout=5)
            return calls

        assert asyncio.run(_run()) == 2
