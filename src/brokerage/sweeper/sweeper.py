"""Deadline sweeper: times out overdue sessions and housekeeps expiring data.

The sweeper holds no locks of its own.  It reads overdue sessions and applies
the ``timeout`` transition through the same guarded write every other caller
uses, so any number of sweepers (one per worker process) can run at once: a
session a requester just completed, or that another sweeper already timed
out, simply fails the guard and is skipped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from brokerage.domain.errors import SessionNotActiveError, StateConflictError
from brokerage.idempotency.gateway import IdempotencyGateway
from brokerage.quotes.store import QuoteStore
from brokerage.sessions.engine import SessionEngine
from brokerage.sessions.store import SessionStore
from brokerage.settlement.engine import SettlementEngine
from brokerage.state.serializers import format_timestamp, utc_now

logger = structlog.get_logger()


class SweepReport(BaseModel):
    """What one sweeper tick changed."""

    model_config = ConfigDict(frozen=True)

    timed_out: list[str] = Field(default_factory=list)
    expired_quotes: list[str] = Field(default_factory=list)
    purged_idempotency_records: int = 0
    commissions_paid: list[str] = Field(default_factory=list)


class DeadlineSweeper:
    """Periodic maintenance over sessions, quotes, keys and commissions.

    Args:
        engine: Applies the ``timeout`` transition.
        sessions: Finds overdue and expiring sessions.
        quotes: Expires quotes past their own ``expires_at``.
        gateway: Purges stale idempotency records (optional).
        settlement: Retries unpaid commissions (optional).
        warning_minutes: Default look-ahead for :meth:`list_expiring`.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        engine: SessionEngine,
        sessions: SessionStore,
        quotes: QuoteStore,
        gateway: IdempotencyGateway | None = None,
        settlement: SettlementEngine | None = None,
        warning_minutes: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._sessions = sessions
        self._quotes = quotes
        self._gateway = gateway
        self._settlement = settlement
        self._warning = timedelta(minutes=warning_minutes)
        self._clock = clock

    def list_expiring(
        self, within_minutes: int | None = None, now: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Return active sessions whose deadline falls in ``(now, now + within]``.

        Each entry carries ``minutes_remaining`` (rounded up) and the count
        of non-expired quotes, so a notifier can nudge the requester.
        """
        now = now or self._clock()
        within = timedelta(minutes=within_minutes) if within_minutes is not None else self._warning
        expiring: list[dict[str, Any]] = []
        for session, quotes_count in self._sessions.list_expiring(now, within):
            seconds = (session.deadline_at - now).total_seconds()
            expiring.append(
                {
                    "session_id": session.id,
                    "requester_id": session.requester_id,
                    "flow_type": session.flow_type.value,
                    "status": session.status.value,
                    "deadline_at": format_timestamp(session.deadline_at),
                    "minutes_remaining": max(1, -(-int(seconds) // 60)),
                    "quotes_count": quotes_count,
                }
            )
        return expiring

    def sweep_expired(self, now: datetime | None = None) -> list[str]:
        """Time out every active session whose deadline is at or before *now*.

        Returns:
            Ids of the sessions this call moved to ``timeout``.
        """
        now = now or self._clock()
        timed_out: list[str] = []
        for snapshot in self._sessions.list_due(now):
            try:
                self._engine.expire_snapshot(snapshot, now)
            except (StateConflictError, SessionNotActiveError):
                # Completed, cancelled or extended since the read; nothing to do.
                logger.debug("sweep_skipped", session_id=snapshot.id)
                continue
            except Exception:
                logger.exception("sweep_session_failed", session_id=snapshot.id)
                continue
            timed_out.append(snapshot.id)

        if timed_out:
            logger.info("sessions_timed_out", count=len(timed_out), session_ids=timed_out)
        return timed_out

    def tick(self, now: datetime | None = None) -> SweepReport:
        """Run one full maintenance pass."""
        now = now or self._clock()
        timed_out = self.sweep_expired(now)
        expired_quotes = self._quotes.mark_expired(now)

        purged = 0
        if self._gateway is not None:
            purged = self._gateway.purge_expired(now)

        paid: list[str] = []
        if self._settlement is not None:
            paid = [record.id for record in self._settlement.retry_due()]

        return SweepReport(
            timed_out=timed_out,
            expired_quotes=expired_quotes,
            purged_idempotency_records=purged,
            commissions_paid=paid,
        )

    async def run_forever(
        self, interval_seconds: float, stop: asyncio.Event | None = None
    ) -> None:
        """Tick every *interval_seconds* until *stop* is set or the task is cancelled.

        A failing tick is logged and the loop carries on.
        """
        stop = stop or asyncio.Event()
        logger.info("sweeper_started", interval_seconds=interval_seconds)
        while not stop.is_set():
            try:
                await asyncio.to_thread(self.tick)
            except Exception:
                logger.exception("sweeper_tick_failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except TimeoutError:
                continue
        logger.info("sweeper_stopped")
