"""SQLite-backed session store with compare-and-set transitions.

A transition is written as a single ``UPDATE ... WHERE`` that repeats the
snapshot the caller decided from (``status``, ``deadline_at``,
``extensions_count``).  If any of those changed in the meantime the update
matches no row and the caller learns it lost the race.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from brokerage.domain.errors import NotFoundError
from brokerage.domain.models import Session, SessionTransition
from brokerage.domain.types import FlowType, SessionStatus
from brokerage.state.db import Database
from brokerage.state.serializers import (
    dump_json,
    dump_payload,
    format_timestamp,
    load_json,
    load_payload,
    parse_timestamp,
    utc_now,
)
from brokerage.state_machine.transitions import ACTIVE_STATES, TERMINAL_STATES

# Columns a transition is allowed to write.
_MUTABLE_COLUMNS = frozenset(
    {
        "status",
        "deadline_at",
        "extensions_count",
        "selected_quote_id",
        "cancellation_reason",
        "error_message",
        "completed_at",
    }
)


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        requester_id=row["requester_id"],
        flow_type=FlowType(row["flow_type"]),
        agent_type=row["agent_type"],
        status=SessionStatus(row["status"]),
        request_data=load_payload(row["request_data"]),
        metadata=load_json(row["metadata"]),
        started_at=parse_timestamp(row["started_at"]),
        deadline_at=parse_timestamp(row["deadline_at"]),
        extensions_count=row["extensions_count"],
        max_extensions=row["max_extensions"],
        selected_quote_id=row["selected_quote_id"],
        cancellation_reason=row["cancellation_reason"],
        error_message=row["error_message"],
        completed_at=parse_timestamp(row["completed_at"]),
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, SessionStatus):
        return value.value
    return value


def _placeholders(values: frozenset[SessionStatus] | list[str]) -> str:
    return ", ".join("?" for _ in values)


class SessionStore:
    """Persist sessions and apply guarded state transitions.

    Args:
        db: The engine database.
        clock: Returns the current UTC time (used for ``updated_at`` and
               transition timestamps).
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock

    @contextmanager
    def _connection(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self._db.reader() as own:
            yield own

    # ------------------------------------------------------------------
    # Write operations (caller-owned transaction)
    # ------------------------------------------------------------------

    def insert(self, conn: sqlite3.Connection, session: Session) -> None:
        """Insert a freshly created session row."""
        now = format_timestamp(self._clock())
        conn.execute(
            """
            INSERT INTO sessions (
                id, requester_id, flow_type, agent_type, status, request_data,
                metadata, started_at, deadline_at, extensions_count, max_extensions,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.requester_id,
                session.flow_type.value,
                session.agent_type,
                session.status.value,
                dump_payload(session.request_data),
                dump_json(session.metadata),
                format_timestamp(session.started_at),
                format_timestamp(session.deadline_at),
                session.extensions_count,
                session.max_extensions,
                now,
                now,
            ),
        )

    def compare_and_set(
        self,
        conn: sqlite3.Connection,
        expected: Session,
        updates: dict[str, Any],
        event: str,
        actor: str | None = None,
        require_no_selection: bool = False,
    ) -> bool:
        """Apply *updates* only if the row still matches *expected*.

        The guard compares ``status``, ``deadline_at`` and
        ``extensions_count`` against the snapshot in one statement.  On
        success one ``session_transitions`` row is appended.

        Args:
            conn: Connection inside the caller's write transaction.
            expected: The snapshot the transition was decided from.
            updates: Column -> new value; only transition columns allowed.
            event: The state machine event being applied.
            actor: Who triggered it (requester id, ``"sweeper"``, ...).
            require_no_selection: Also require ``selected_quote_id IS NULL``.

        Returns:
            ``True`` if the row was updated, ``False`` if the guard failed.
        """
        unknown = set(updates) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"not transition columns: {sorted(unknown)}")

        now = format_timestamp(self._clock())
        assignments = ", ".join(f"{column} = ?" for column in updates)
        conditions = ["id = ?", "status = ?", "deadline_at = ?", "extensions_count = ?"]
        if require_no_selection:
            conditions.append("selected_quote_id IS NULL")

        cursor = conn.execute(
            f"UPDATE sessions SET {assignments}, updated_at = ? WHERE {' AND '.join(conditions)}",
            (
                *(_encode(value) for value in updates.values()),
                now,
                expected.id,
                expected.status.value,
                format_timestamp(expected.deadline_at),
                expected.extensions_count,
            ),
        )
        if cursor.rowcount != 1:
            return False

        to_status = updates.get("status", expected.status)
        conn.execute(
            """
            INSERT INTO session_transitions (
                session_id, from_status, event, to_status, actor, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (expected.id, expected.status.value, str(event), _encode(to_status), actor, now),
        )
        return True

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get(self, session_id: str, conn: sqlite3.Connection | None = None) -> Session:
        """Return one session or raise :class:`NotFoundError`."""
        with self._connection(conn) as active:
            row = active.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None:
            raise NotFoundError("session", session_id)
        return _row_to_session(row)

    def find_active(
        self, conn: sqlite3.Connection, requester_id: str, flow_type: FlowType
    ) -> Session | None:
        """Return the requester's outstanding session for *flow_type*, if any."""
        states = [s.value for s in ACTIVE_STATES]
        row = conn.execute(
            f"""
            SELECT * FROM sessions
            WHERE requester_id = ? AND flow_type = ? AND status IN ({_placeholders(states)})
            ORDER BY started_at DESC LIMIT 1
            """,
            (requester_id, flow_type.value, *states),
        ).fetchone()
        return _row_to_session(row) if row else None

    def list_due(self, now: datetime, limit: int = 500) -> list[Session]:
        """Return active sessions whose deadline is at or before *now*."""
        states = [s.value for s in ACTIVE_STATES]
        with self._db.reader() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM sessions
                WHERE status IN ({_placeholders(states)}) AND deadline_at <= ?
                ORDER BY deadline_at ASC LIMIT ?
                """,
                (*states, format_timestamp(now), limit),
            ).fetchall()
        return [_row_to_session(row) for row in rows]

    def list_expiring(self, now: datetime, within: timedelta) -> list[tuple[Session, int]]:
        """Return active sessions with a deadline in ``(now, now + within]``.

        Returns:
            ``(session, live_quote_count)`` pairs, soonest deadline first.
        """
        states = [s.value for s in ACTIVE_STATES]
        with self._db.reader() as conn:
            rows = conn.execute(
                f"""
                SELECT s.*, (
                    SELECT COUNT(*) FROM quotes q
                    WHERE q.session_id = s.id AND q.status != 'expired'
                ) AS live_quotes
                FROM sessions s
                WHERE s.status IN ({_placeholders(states)})
                  AND s.deadline_at > ? AND s.deadline_at <= ?
                ORDER BY s.deadline_at ASC
                """,
                (*states, format_timestamp(now), format_timestamp(now + within)),
            ).fetchall()
        return [(_row_to_session(row), int(row["live_quotes"])) for row in rows]

    def list_sessions(
        self,
        *,
        status: SessionStatus | None = None,
        flow_type: FlowType | None = None,
        agent_type: str | None = None,
        requester_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Session]:
        """List sessions newest first with optional exact-match filters."""
        conditions: list[str] = []
        params: list[str | int] = []

        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)

        if flow_type is not None:
            conditions.append("flow_type = ?")
            params.append(flow_type.value)

        if agent_type is not None:
            conditions.append("agent_type = ?")
            params.append(agent_type)

        if requester_id is not None:
            conditions.append("requester_id = ?")
            params.append(requester_id)

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        params.extend([limit, offset])
        with self._db.reader() as conn:
            rows = conn.execute(
                f"SELECT * FROM sessions {where_clause} "
                "ORDER BY started_at DESC, id ASC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [_row_to_session(row) for row in rows]

    def transitions(self, session_id: str) -> list[SessionTransition]:
        """Return the session's transition history in chronological order."""
        with self._db.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM session_transitions WHERE session_id = ? ORDER BY id ASC",
                (session_id,),
            ).fetchall()
        return [
            SessionTransition(
                session_id=row["session_id"],
                from_status=SessionStatus(row["from_status"]),
                event=row["event"],
                to_status=SessionStatus(row["to_status"]),
                actor=row["actor"],
                created_at=parse_timestamp(row["created_at"]),
            )
            for row in rows
        ]

    def kpis(self, agent_type: str | None = None) -> dict[str, Any]:
        """Aggregate session outcomes for dashboards.

        Rates are computed over terminal sessions only and rendered as
        percentage strings with one decimal.
        """
        condition = "WHERE agent_type = ?" if agent_type else ""
        params: tuple[str, ...] = (agent_type,) if agent_type else ()
        with self._db.reader() as conn:
            rows = conn.execute(
                f"SELECT status, COUNT(*) AS n FROM sessions {condition} GROUP BY status",
                params,
            ).fetchall()
        counts = {SessionStatus(row["status"]): int(row["n"]) for row in rows}

        total = sum(counts.values())
        finished = sum(n for status, n in counts.items() if status in TERMINAL_STATES)
        active = sum(n for status, n in counts.items() if status in ACTIVE_STATES)

        def _rate(status: SessionStatus) -> str:
            if finished == 0:
                return "0.0"
            return f"{counts.get(status, 0) * 100 / finished:.1f}"

        return {
            "total_sessions": total,
            "active_sessions": active,
            "completed_sessions": counts.get(SessionStatus.COMPLETED, 0),
            "timeout_sessions": counts.get(SessionStatus.TIMEOUT, 0),
            "cancelled_sessions": counts.get(SessionStatus.CANCELLED, 0),
            "timeout_rate": _rate(SessionStatus.TIMEOUT),
            "acceptance_rate": _rate(SessionStatus.COMPLETED),
        }
