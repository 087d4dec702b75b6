"""Commission settlement for completed sessions.

When a session completes and its metadata names a broker, the vendor whose
quote was selected owes the broker a commission.  The commission row is
created first (``due``) and then paid by a ledger transfer.  Payment and the
``due -> paid`` flip happen in the same ledger transaction, guarded by
``WHERE status = 'due'``, so a commission is paid at most once no matter
how many workers retry it.

A failed payment never touches the session: the row stays ``due``, the
failure is reported to the ops channel, and :meth:`SettlementEngine.retry_due`
picks it up again on the next sweeper tick.  A commission whose quote has
no ``vendor_id`` cannot be charged and is left for an operator.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Callable
from concurrent.futures import Executor, Future
from datetime import datetime

import structlog

from brokerage.audit.logger import AuditLogger
from brokerage.domain.errors import BrokerageError, ValidationError
from brokerage.domain.models import CommissionRecord, Quote, Session
from brokerage.domain.types import CommissionStatus
from brokerage.ledger.ledger import Ledger
from brokerage.observability.metrics import SETTLEMENTS
from brokerage.ops.notifier import OpsNotifier
from brokerage.state.db import Database
from brokerage.state.serializers import format_timestamp, parse_timestamp, utc_now

logger = structlog.get_logger()

COMMISSION_REASON = "commission"


def _row_to_commission(row: sqlite3.Row) -> CommissionRecord:
    return CommissionRecord(
        id=row["id"],
        session_id=row["session_id"],
        quote_id=row["quote_id"],
        vendor_id=row["vendor_id"],
        broker_id=row["broker_id"],
        amount=row["amount"],
        status=CommissionStatus(row["status"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=parse_timestamp(row["created_at"]),
        paid_at=parse_timestamp(row["paid_at"]),
    )


def _log_alert_error(future: Future[str | None]) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("ops_alert_failed", error=str(exc))


class SettlementEngine:
    """Create and pay broker commissions.

    Args:
        db: The engine database.
        ledger: Ledger used for the vendor -> broker transfer.
        notifier: Ops channel for failed payments.
        audit: Audit trail sink.
        default_commission_tokens: Amount used when the session metadata
            carries a broker but no ``commission_tokens``.
        alert_executor: Runs ops alerts off the caller's thread; alerts are
            posted inline when ``None``.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        db: Database,
        ledger: Ledger,
        notifier: OpsNotifier | None = None,
        audit: AuditLogger | None = None,
        default_commission_tokens: int = 0,
        alert_executor: Executor | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._notifier = notifier
        self._audit = audit
        self._default_amount = default_commission_tokens
        self._alert_executor = alert_executor
        self._clock = clock

    def commission_terms(self, session: Session) -> tuple[str, int] | None:
        """Return ``(broker_id, amount)`` if *session* owes a commission."""
        broker_id = session.metadata.get("broker_id")
        if not broker_id:
            return None
        raw_amount = session.metadata.get("commission_tokens", self._default_amount)
        try:
            amount = int(raw_amount)
        except (TypeError, ValueError):
            logger.warning(
                "commission_amount_invalid",
                session_id=session.id,
                commission_tokens=raw_amount,
            )
            return None
        if amount <= 0:
            return None
        return str(broker_id), amount

    def settle(self, session: Session, quote: Quote) -> CommissionRecord | None:
        """Create the session's commission (once) and try to pay it.

        Returns:
            The commission record after the attempt, or ``None`` when the
            session carries no broker relationship.
        """
        terms = self.commission_terms(session)
        if terms is None:
            return None
        broker_id, amount = terms

        record = self._create(session, quote, broker_id, amount)
        if record.status is CommissionStatus.PAID:
            return record
        return self._attempt(record)

    def retry_due(self, limit: int = 50) -> list[CommissionRecord]:
        """Retry up to *limit* payable commissions, fewest attempts first.

        Returns:
            The records that are ``paid`` after this pass.
        """
        paid: list[CommissionRecord] = []
        for record in self.list_due(limit=limit):
            result = self._attempt(record)
            if result.status is CommissionStatus.PAID:
                paid.append(result)
        if paid:
            logger.info("commissions_retried", paid=len(paid))
        return paid

    def get(self, session_id: str) -> CommissionRecord | None:
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT * FROM commission_records WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return _row_to_commission(row) if row else None

    def list_due(self, limit: int = 50) -> list[CommissionRecord]:
        """Unpaid commissions that have a vendor to charge.

        Rows with no ``vendor_id`` can never be paid; they stay ``due`` for
        an operator (alerted on the first failure) and are left out here.
        Least-attempted rows come first so a batch of repeat failures cannot
        starve newer commissions.
        """
        with self._db.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM commission_records "
                "WHERE status = ? AND vendor_id IS NOT NULL "
                "ORDER BY attempts ASC, created_at ASC, id ASC LIMIT ?",
                (CommissionStatus.DUE.value, limit),
            ).fetchall()
        return [_row_to_commission(row) for row in rows]

    # ------------------------------------------------------------------

    def _create(
        self, session: Session, quote: Quote, broker_id: str, amount: int
    ) -> CommissionRecord:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO commission_records (
                    id, session_id, quote_id, vendor_id, broker_id, amount,
                    status, attempts, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    uuid.uuid4().hex,
                    session.id,
                    quote.id,
                    quote.vendor_id,
                    broker_id,
                    amount,
                    CommissionStatus.DUE.value,
                    format_timestamp(self._clock()),
                ),
            )
            row = conn.execute(
                "SELECT * FROM commission_records WHERE session_id = ?",
                (session.id,),
            ).fetchone()
        return _row_to_commission(row)

    def _load(self, commission_id: str) -> CommissionRecord:
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT * FROM commission_records WHERE id = ?",
                (commission_id,),
            ).fetchone()
        return _row_to_commission(row)

    def _attempt(self, record: CommissionRecord) -> CommissionRecord:
        try:
            if not record.vendor_id:
                raise ValidationError("selected quote has no vendor_id to charge")
            self._pay(record, record.vendor_id)
        except Exception as exc:
            if not isinstance(exc, BrokerageError):
                logger.exception("settlement_unexpected_failure", commission_id=record.id)
            return self._record_failure(record, str(exc))

        paid = self._load(record.id)
        if paid.status is CommissionStatus.PAID and paid.attempts == record.attempts + 1:
            SETTLEMENTS.labels(outcome="paid").inc()
            logger.info(
                "commission_paid",
                commission_id=record.id,
                session_id=record.session_id,
                amount=record.amount,
            )
            if self._audit is not None:
                self._audit.log_settlement(
                    session_id=record.session_id,
                    quote_id=record.quote_id,
                    commission_id=record.id,
                    amount=record.amount,
                    payer_id=record.vendor_id or "",
                    broker_id=record.broker_id,
                )
        return paid

    def _pay(self, record: CommissionRecord, payer_id: str) -> None:
        with self._ledger.atomic([payer_id, record.broker_id]) as tx:
            cursor = tx.conn.execute(
                """
                UPDATE commission_records
                SET status = ?, paid_at = ?, attempts = attempts + 1, last_error = NULL
                WHERE id = ? AND status = ?
                """,
                (
                    CommissionStatus.PAID.value,
                    format_timestamp(self._clock()),
                    record.id,
                    CommissionStatus.DUE.value,
                ),
            )
            if cursor.rowcount != 1:
                # Another worker already paid it.
                return
            Ledger.transfer_within(
                tx,
                payer_id,
                record.broker_id,
                record.amount,
                COMMISSION_REASON,
                {"session_id": record.session_id, "commission_id": record.id},
            )

    def _record_failure(self, record: CommissionRecord, error: str) -> CommissionRecord:
        with self._db.transaction() as conn:
            conn.execute(
                """
                UPDATE commission_records SET attempts = attempts + 1, last_error = ?
                WHERE id = ? AND status = ?
                """,
                (error, record.id, CommissionStatus.DUE.value),
            )
        failed = self._load(record.id)
        SETTLEMENTS.labels(outcome="failed").inc()
        logger.warning(
            "commission_payment_failed",
            commission_id=record.id,
            session_id=record.session_id,
            attempts=failed.attempts,
            error=error,
        )
        if self._audit is not None:
            self._audit.log_settlement_failed(
                session_id=record.session_id,
                commission_id=record.id,
                error=error,
                attempts=failed.attempts,
            )
        # Alert once per commission; later retries only log.
        if failed.attempts == 1:
            self._alert(failed, error)
        return failed

    def _alert(self, record: CommissionRecord, error: str) -> None:
        if self._notifier is None:
            return
        if self._alert_executor is None:
            self._notifier.post_settlement_failure(record, error)
            return
        future = self._alert_executor.submit(
            self._notifier.post_settlement_failure, record, error
        )
        future.add_done_callback(_log_alert_error)
