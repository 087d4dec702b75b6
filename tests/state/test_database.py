"""Tests for SQLite connection management and the engine schema."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from brokerage.state.db import Database
from brokerage.state.schema import init_database


class TestDatabase:
    """Connection factory, transactions and ping."""

    def test_initialize_creates_parent_and_wal(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "nested" / "engine.db")
        init_database(db)
        assert db.path.exists()
        with db.reader() as conn:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"

    def test_transaction_commits(self, db: Database) -> None:
        with db.transaction() as conn:
            conn.execute(
                "INSERT INTO ledger_accounts (profile_id, balance, created_at, updated_at) "
                "VALUES ('p', 5, 'x', 'x')"
            )
        with db.reader() as conn:
            row = conn.execute("SELECT balance FROM ledger_accounts").fetchone()
        assert row["balance"] == 5

    def test_transaction_rolls_back_on_error(self, db: Database) -> None:
        with pytest.raises(RuntimeError), db.transaction() as conn:
            conn.execute(
                "INSERT INTO ledger_accounts (profile_id, balance, created_at, updated_at) "
                "VALUES ('p', 5, 'x', 'x')"
            )
            raise RuntimeError("boom")
        with db.reader() as conn:
            assert conn.execute("SELECT COUNT(*) FROM ledger_accounts").fetchone()[0] == 0

    def test_ping(self, db: Database, tmp_path: Path) -> None:
        assert db.ping() is True
        assert Database(tmp_path / "missing-dir" / "x.db").ping() is False


class TestSchemaConstraints:
    """Invariants the tables enforce regardless of the writer."""

    def test_negative_balance_rejected(self, db: Database) -> None:
        with pytest.raises(sqlite3.IntegrityError), db.transaction() as conn:
            conn.execute(
                "INSERT INTO ledger_accounts (profile_id, balance, created_at, updated_at) "
                "VALUES ('p', -1, 'x', 'x')"
            )

    def test_deadline_must_follow_start(self, db: Database) -> None:
        with pytest.raises(sqlite3.IntegrityError), db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sessions (
                    id, requester_id, flow_type, agent_type, started_at, deadline_at,
                    created_at, updated_at
                ) VALUES ('s', 'r', 'nearby_drivers', 'a', 'b', 'a', 'x', 'x')
                """
            )

    def test_init_is_idempotent(self, db: Database) -> None:
        init_database(db)
        init_database(db)
        with db.reader() as conn:
            names = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
        assert {
            "sessions",
            "session_transitions",
            "quotes",
            "ledger_accounts",
            "ledger_entries",
            "commission_records",
            "idempotency_records",
            "agent_registry",
        } <= names
