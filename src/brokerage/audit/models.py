"""Audit trail models for session, quote, ledger and settlement events."""

from enum import StrEnum

from pydantic import BaseModel


class EventType(StrEnum):
    """Types of events tracked in the audit trail."""

    SESSION_CREATED = "session_created"
    QUOTE_RECEIVED = "quote_received"
    STATE_TRANSITION = "state_transition"
    DEADLINE_EXTENDED = "deadline_extended"
    SETTLEMENT = "settlement"
    SETTLEMENT_FAILED = "settlement_failed"
    LEDGER_TRANSFER = "ledger_transfer"
    ERROR = "error"


class AuditEntry(BaseModel):
    """A single audit trail entry.

    Everything except ``event_type`` is optional; a ledger transfer has no
    session and a session creation has no quote.
    """

    event_type: EventType
    session_id: str | None = None
    requester_id: str | None = None
    quote_id: str | None = None
    vendor_contact: str | None = None
    session_status: str | None = None
    actor: str | None = None
    metadata: dict[str, str] | None = None
