"""Audit trail for session, quote, ledger and settlement events."""

from brokerage.audit.logger import AuditLogger
from brokerage.audit.models import AuditEntry, EventType
from brokerage.audit.store import init_audit_db, insert_audit_entry, query_audit_trail

__all__ = [
    "AuditEntry",
    "AuditLogger",
    "EventType",
    "init_audit_db",
    "insert_audit_entry",
    "query_audit_trail",
]
