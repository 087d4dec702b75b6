"""SQLite-backed audit trail store.

The audit log lives in its own database file so that heavy querying from
the CLI never contends with the engine's write lock.  All statements are
parameterized.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any

from brokerage.audit.models import AuditEntry
from brokerage.state.db import Database
from brokerage.state.serializers import format_timestamp, utc_now


def init_audit_tables(conn: sqlite3.Connection) -> None:
    """Create the ``audit_log`` table and its indexes if missing."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            event_type TEXT NOT NULL,
            session_id TEXT,
            requester_id TEXT,
            quote_id TEXT,
            vendor_contact TEXT,
            session_status TEXT,
            actor TEXT,
            metadata TEXT
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_session ON audit_log (session_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_requester ON audit_log (requester_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log (timestamp)")


def init_audit_db(db: Database) -> None:
    """Prepare *db* (WAL mode) and create the audit schema."""
    db.initialize()
    with db.transaction() as conn:
        init_audit_tables(conn)


def insert_audit_entry(
    conn: sqlite3.Connection, entry: AuditEntry, timestamp: datetime | None = None
) -> int:
    """Insert one audit entry and return its row id."""
    metadata_json: str | None = None
    if entry.metadata is not None:
        metadata_json = json.dumps(entry.metadata)

    cursor = conn.execute(
        """
        INSERT INTO audit_log (
            timestamp, event_type, session_id, requester_id, quote_id,
            vendor_contact, session_status, actor, metadata
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            format_timestamp(timestamp or utc_now()),
            entry.event_type.value,
            entry.session_id,
            entry.requester_id,
            entry.quote_id,
            entry.vendor_contact,
            entry.session_status,
            entry.actor,
            metadata_json,
        ),
    )
    return cursor.lastrowid or 0


def query_audit_trail(
    conn: sqlite3.Connection,
    *,
    session_id: str | None = None,
    requester_id: str | None = None,
    from_date: str | None = None,
    to_date: str | None = None,
    event_type: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Query the audit trail with optional filters, newest first.

    Args:
        conn: An open database connection.
        session_id: Exact session id.
        requester_id: Exact requester id.
        from_date: Entries at or after this ISO 8601 timestamp.
        to_date: Entries at or before this ISO 8601 timestamp.
        event_type: Exact event type.
        limit: Maximum number of rows.

    Returns:
        One dict per row with ``metadata`` decoded.
    """
    conn.row_factory = sqlite3.Row

    conditions: list[str] = []
    params: list[str | int] = []

    if session_id is not None:
        conditions.append("session_id = ?")
        params.append(session_id)

    if requester_id is not None:
        conditions.append("requester_id = ?")
        params.append(requester_id)

    if from_date is not None:
        conditions.append("timestamp >= ?")
        params.append(from_date)

    if to_date is not None:
        conditions.append("timestamp <= ?")
        params.append(to_date)

    if event_type is not None:
        conditions.append("event_type = ?")
        params.append(event_type)

    where_clause = ""
    if conditions:
        where_clause = "WHERE " + " AND ".join(conditions)

    query = f"SELECT * FROM audit_log {where_clause} ORDER BY timestamp DESC, id DESC LIMIT ?"
    params.append(limit)

    results: list[dict[str, Any]] = []
    for row in conn.execute(query, params).fetchall():
        row_dict = dict(row)
        if row_dict.get("metadata") is not None:
            row_dict["metadata"] = json.loads(row_dict["metadata"])
        results.append(row_dict)
    return results
