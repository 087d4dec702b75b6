"""SQLite schema for sessions, quotes, ledger, commissions, and idempotency.

Invariants that must hold no matter which code path writes a row are also
enforced as table constraints: deadline after start, extension bounds,
one quote per (session, vendor contact), non-negative balances, non-zero
ledger deltas, and one commission per session.
"""

from __future__ import annotations

import sqlite3

from brokerage.state.db import Database

_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS agent_registry (
        agent_type TEXT PRIMARY KEY,
        name TEXT NOT NULL DEFAULT '',
        enabled INTEGER NOT NULL DEFAULT 1,
        sla_minutes INTEGER NOT NULL DEFAULT 5 CHECK (sla_minutes >= 1),
        max_extensions INTEGER NOT NULL DEFAULT 2 CHECK (max_extensions >= 0),
        fan_out_limit INTEGER NOT NULL DEFAULT 10 CHECK (fan_out_limit >= 1),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        requester_id TEXT NOT NULL,
        flow_type TEXT NOT NULL,
        agent_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'searching' CHECK (status IN (
            'searching', 'negotiating', 'presenting',
            'completed', 'timeout', 'cancelled', 'error'
        )),
        request_data TEXT NOT NULL DEFAULT '{}',
        metadata TEXT NOT NULL DEFAULT '{}',
        started_at TEXT NOT NULL,
        deadline_at TEXT NOT NULL,
        extensions_count INTEGER NOT NULL DEFAULT 0,
        max_extensions INTEGER NOT NULL DEFAULT 2,
        selected_quote_id TEXT,
        cancellation_reason TEXT,
        error_message TEXT,
        completed_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (deadline_at > started_at),
        CHECK (extensions_count >= 0 AND extensions_count <= max_extensions)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_transitions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL REFERENCES sessions (id),
        from_status TEXT NOT NULL,
        event TEXT NOT NULL,
        to_status TEXT NOT NULL,
        actor TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quotes (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES sessions (id),
        vendor_id TEXT,
        vendor_type TEXT NOT NULL DEFAULT 'other',
        vendor_name TEXT,
        vendor_contact TEXT NOT NULL,
        offer_data TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'received' CHECK (status IN (
            'pending', 'received', 'accepted', 'rejected',
            'expired', 'withdrawn', 'counter_offered'
        )),
        responded_at TEXT NOT NULL,
        expires_at TEXT,
        ranking_score REAL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (session_id, vendor_contact)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_accounts (
        profile_id TEXT PRIMARY KEY,
        balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
        pending INTEGER NOT NULL DEFAULT 0 CHECK (pending >= 0),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        profile_id TEXT NOT NULL REFERENCES ledger_accounts (profile_id),
        delta INTEGER NOT NULL CHECK (delta != 0),
        type TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        balance_after INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS commission_records (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL UNIQUE REFERENCES sessions (id),
        quote_id TEXT NOT NULL,
        vendor_id TEXT,
        broker_id TEXT NOT NULL,
        amount INTEGER NOT NULL CHECK (amount > 0),
        status TEXT NOT NULL DEFAULT 'due' CHECK (status IN ('due', 'paid')),
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TEXT NOT NULL,
        paid_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_records (
        key TEXT PRIMARY KEY,
        scope TEXT NOT NULL,
        request_hash TEXT NOT NULL,
        status_code INTEGER,
        body TEXT,
        created_at TEXT NOT NULL,
        finalized_at TEXT
    )
    """,
)

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_sessions_status_deadline ON sessions (status, deadline_at)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_requester_flow ON sessions (requester_id, flow_type)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_started_at ON sessions (started_at)",
    "CREATE INDEX IF NOT EXISTS idx_transitions_session ON session_transitions (session_id)",
    "CREATE INDEX IF NOT EXISTS idx_quotes_session ON quotes (session_id, responded_at)",
    "CREATE INDEX IF NOT EXISTS idx_quotes_expires_at ON quotes (status, expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_entries_profile ON ledger_entries (profile_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_commissions_due "
    "ON commission_records (status, attempts, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_idempotency_created ON idempotency_records (created_at)",
)


def init_brokerage_tables(conn: sqlite3.Connection) -> None:
    """Create all engine tables and indexes if they do not already exist.

    Args:
        conn: An open connection (autocommit mode, as returned by
              :meth:`Database.connect`).
    """
    for ddl in _TABLES:
        conn.execute(ddl)
    for ddl in _INDEXES:
        conn.execute(ddl)


def init_database(db: Database) -> None:
    """Initialize *db*: WAL mode plus the full engine schema."""
    db.initialize()
    with db.reader() as conn:
        init_brokerage_tables(conn)
