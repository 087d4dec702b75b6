"""Typed convenience API for writing audit trail entries.

Each method builds a properly shaped :class:`AuditEntry` and inserts it in
its own short transaction.  The audit trail is a side channel: a failed
write is logged and never propagates into the operation being audited.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from datetime import datetime

import structlog

from brokerage.audit.models import AuditEntry, EventType
from brokerage.audit.store import insert_audit_entry
from brokerage.state.db import Database
from brokerage.state.serializers import utc_now

logger = structlog.get_logger()


class AuditLogger:
    """Per-event-type methods over :func:`insert_audit_entry`.

    Args:
        db: The audit database.
        clock: Returns the current UTC time used as the entry timestamp.
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock

    def _insert(self, entry: AuditEntry) -> int:
        try:
            with self._db.transaction() as conn:
                return insert_audit_entry(conn, entry, timestamp=self._clock())
        except sqlite3.Error:
            logger.exception(
                "audit_write_failed",
                event_type=entry.event_type.value,
                session_id=entry.session_id,
            )
            return 0

    def log_session_created(
        self,
        session_id: str,
        requester_id: str,
        flow_type: str,
        agent_type: str,
        deadline_at: str,
    ) -> int:
        """Log a newly opened session and its initial deadline."""
        return self._insert(
            AuditEntry(
                event_type=EventType.SESSION_CREATED,
                session_id=session_id,
                requester_id=requester_id,
                session_status="searching",
                actor=requester_id,
                metadata={
                    "flow_type": flow_type,
                    "agent_type": agent_type,
                    "deadline_at": deadline_at,
                },
            )
        )

    def log_quote_received(
        self,
        session_id: str,
        quote_id: str,
        vendor_contact: str,
        quote_status: str,
        session_status: str,
    ) -> int:
        """Log a vendor offer (first submission or counter-offer)."""
        return self._insert(
            AuditEntry(
                event_type=EventType.QUOTE_RECEIVED,
                session_id=session_id,
                quote_id=quote_id,
                vendor_contact=vendor_contact,
                session_status=session_status,
                actor=vendor_contact,
                metadata={"quote_status": quote_status},
            )
        )

    def log_state_transition(
        self,
        session_id: str,
        from_state: str,
        to_state: str,
        event: str,
        actor: str | None = None,
        quote_id: str | None = None,
        reason: str | None = None,
    ) -> int:
        """Log a session state machine transition.

        ``from_state``, ``to_state`` and ``event`` are stored in metadata.
        """
        metadata = {"from_state": from_state, "to_state": to_state, "event": event}
        if reason:
            metadata["reason"] = reason
        return self._insert(
            AuditEntry(
                event_type=EventType.STATE_TRANSITION,
                session_id=session_id,
                quote_id=quote_id,
                session_status=to_state,
                actor=actor,
                metadata=metadata,
            )
        )

    def log_deadline_extended(
        self,
        session_id: str,
        extensions_count: int,
        deadline_at: str,
        actor: str | None = None,
    ) -> int:
        return self._insert(
            AuditEntry(
                event_type=EventType.DEADLINE_EXTENDED,
                session_id=session_id,
                actor=actor,
                metadata={
                    "extensions_count": str(extensions_count),
                    "deadline_at": deadline_at,
                },
            )
        )

    def log_settlement(
        self,
        session_id: str,
        quote_id: str,
        commission_id: str,
        amount: int,
        payer_id: str,
        broker_id: str,
    ) -> int:
        """Log a commission moved from the vendor to the broker."""
        return self._insert(
            AuditEntry(
                event_type=EventType.SETTLEMENT,
                session_id=session_id,
                quote_id=quote_id,
                actor="settlement",
                metadata={
                    "commission_id": commission_id,
                    "amount": str(amount),
                    "payer_id": payer_id,
                    "broker_id": broker_id,
                },
            )
        )

    def log_settlement_failed(
        self,
        session_id: str,
        commission_id: str,
        error: str,
        attempts: int,
    ) -> int:
        """Log a commission left ``due`` after a failed payment attempt."""
        return self._insert(
            AuditEntry(
                event_type=EventType.SETTLEMENT_FAILED,
                session_id=session_id,
                actor="settlement",
                metadata={
                    "commission_id": commission_id,
                    "error": error,
                    "attempts": str(attempts),
                },
            )
        )

    def log_ledger_transfer(
        self,
        from_profile: str,
        to_profile: str,
        amount: int,
        reason: str,
        actor: str | None = None,
    ) -> int:
        return self._insert(
            AuditEntry(
                event_type=EventType.LEDGER_TRANSFER,
                actor=actor,
                metadata={
                    "from_profile": from_profile,
                    "to_profile": to_profile,
                    "amount": str(amount),
                    "reason": reason,
                },
            )
        )

    def log_error(
        self,
        session_id: str | None,
        error_message: str,
        stage: str,
    ) -> int:
        """Log an unrecoverable fault.

        Args:
            session_id: The affected session, if any.
            error_message: Human-readable description of the fault.
            stage: Operation that failed (e.g. ``"select_quote"``).
        """
        return self._insert(
            AuditEntry(
                event_type=EventType.ERROR,
                session_id=session_id,
                metadata={"error": error_message, "stage": stage},
            )
        )
