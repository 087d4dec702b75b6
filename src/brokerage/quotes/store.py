"""SQLite-backed quote store.

Write methods take the caller's open connection so that quote changes land
in the same transaction as the session guard that authorised them.  Read
methods open their own short-lived connection unless one is passed in.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

import structlog

from brokerage.domain.errors import DuplicateVendorError, NotFoundError
from brokerage.domain.models import Payload, Quote, VendorMeta
from brokerage.domain.types import (
    EXPIRABLE_QUOTE_STATUSES,
    SELECTABLE_QUOTE_STATUSES,
    QuoteStatus,
)
from brokerage.state.db import Database
from brokerage.state.serializers import (
    dump_payload,
    format_timestamp,
    load_payload,
    parse_timestamp,
    utc_now,
)

logger = structlog.get_logger()

QuoteScorer = Callable[[Payload, VendorMeta], float | None]

# Statuses from which a vendor resubmission can no longer revive the quote.
_FINAL_QUOTE_STATUSES = frozenset(
    {QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.EXPIRED, QuoteStatus.WITHDRAWN}
)


def _row_to_quote(row: sqlite3.Row) -> Quote:
    return Quote(
        id=row["id"],
        session_id=row["session_id"],
        vendor_id=row["vendor_id"],
        vendor_type=row["vendor_type"],
        vendor_name=row["vendor_name"],
        vendor_contact=row["vendor_contact"],
        offer_data=load_payload(row["offer_data"]),
        status=QuoteStatus(row["status"]),
        responded_at=parse_timestamp(row["responded_at"]),
        expires_at=parse_timestamp(row["expires_at"]),
        ranking_score=row["ranking_score"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


class QuoteStore:
    """Holds vendor offers and enforces one quote per vendor per session.

    Args:
        db: The engine database.
        scorer: Optional callable computing ``ranking_score`` for a
                submission that did not carry one.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        db: Database,
        scorer: QuoteScorer | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._scorer = scorer
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

    def upsert(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        vendor_contact: str,
        vendor_meta: VendorMeta,
        offer: Payload,
        ranking_score: float | None = None,
        expires_at: datetime | None = None,
    ) -> tuple[Quote, bool]:
        """Record a vendor's offer, updating their earlier quote if present.

        A first submission creates a ``received`` quote.  A later submission
        from the same vendor contact replaces the offer on the existing row
        and marks it ``counter_offered``; the row is never duplicated.

        Args:
            conn: Connection inside the caller's write transaction.
            session_id: The session being quoted.
            vendor_contact: Vendor phone/number; unique within the session.
            vendor_meta: Vendor identity (id, type, display name).
            offer: Opaque offer payload.
            ranking_score: Externally computed score; falls back to the
                           configured scorer when omitted.
            expires_at: When the offer lapses, if it does.

        Returns:
            ``(quote, created)``.

        Raises:
            DuplicateVendorError: If the vendor's existing quote is final
                (accepted, rejected, expired or withdrawn).
        """
        contact = vendor_contact.strip()
        if ranking_score is None and self._scorer is not None:
            ranking_score = self._scorer(offer, vendor_meta)

        now = format_timestamp(self._clock())
        expires = format_timestamp(expires_at) if expires_at is not None else None
        quote_id = uuid.uuid4().hex

        cursor = conn.execute(
            """
            INSERT INTO quotes (
                id, session_id, vendor_id, vendor_type, vendor_name, vendor_contact,
                offer_data, status, responded_at, expires_at, ranking_score,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (session_id, vendor_contact) DO NOTHING
            """,
            (
                quote_id,
                session_id,
                vendor_meta.vendor_id,
                vendor_meta.vendor_type.value,
                vendor_meta.vendor_name,
                contact,
                dump_payload(offer),
                QuoteStatus.RECEIVED.value,
                now,
                expires,
                ranking_score,
                now,
                now,
            ),
        )
        if cursor.rowcount == 1:
            logger.info("quote_received", session_id=session_id, quote_id=quote_id)
            return self._get_by_id(conn, quote_id), True

        existing = conn.execute(
            "SELECT id, status FROM quotes WHERE session_id = ? AND vendor_contact = ?",
            (session_id, contact),
        ).fetchone()
        if QuoteStatus(existing["status"]) in _FINAL_QUOTE_STATUSES:
            raise DuplicateVendorError(session_id, contact)

        conn.execute(
            """
            UPDATE quotes SET
                vendor_id = COALESCE(?, vendor_id),
                vendor_type = ?,
                vendor_name = COALESCE(?, vendor_name),
                offer_data = ?,
                status = ?,
                responded_at = ?,
                expires_at = ?,
                ranking_score = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                vendor_meta.vendor_id,
                vendor_meta.vendor_type.value,
                vendor_meta.vendor_name,
                dump_payload(offer),
                QuoteStatus.COUNTER_OFFERED.value,
                now,
                expires,
                ranking_score,
                now,
                existing["id"],
            ),
        )
        logger.info("quote_counter_offered", session_id=session_id, quote_id=existing["id"])
        return self._get_by_id(conn, existing["id"]), False

    def mark_accepted(self, conn: sqlite3.Connection, session_id: str, quote_id: str) -> bool:
        """Accept the quote if it belongs to the session and is still selectable.

        Returns:
            ``True`` if the quote moved to ``accepted``.
        """
        placeholders = ", ".join("?" for _ in SELECTABLE_QUOTE_STATUSES)
        cursor = conn.execute(
            f"""
            UPDATE quotes SET status = ?, updated_at = ?
            WHERE id = ? AND session_id = ? AND status IN ({placeholders})
            """,
            (
                QuoteStatus.ACCEPTED.value,
                format_timestamp(self._clock()),
                quote_id,
                session_id,
                *(s.value for s in SELECTABLE_QUOTE_STATUSES),
            ),
        )
        return cursor.rowcount == 1

    def mark_expired(self, cutoff: datetime, session_id: str | None = None) -> list[str]:
        """Expire open quotes whose ``expires_at`` is at or before *cutoff*.

        Args:
            cutoff: Quotes with ``expires_at <= cutoff`` are expired.
            session_id: Restrict to one session; ``None`` sweeps all sessions.

        Returns:
            The ids of quotes moved to ``expired``.
        """
        statuses = [s.value for s in EXPIRABLE_QUOTE_STATUSES]
        placeholders = ", ".join("?" for _ in statuses)
        conditions = [f"status IN ({placeholders})", "expires_at IS NOT NULL", "expires_at <= ?"]
        params: list[str] = [*statuses, format_timestamp(cutoff)]
        if session_id is not None:
            conditions.append("session_id = ?")
            params.append(session_id)
        where_clause = " AND ".join(conditions)

        with self._db.transaction() as conn:
            rows = conn.execute(f"SELECT id FROM quotes WHERE {where_clause}", params).fetchall()
            expired_ids = [row["id"] for row in rows]
            if expired_ids:
                id_placeholders = ", ".join("?" for _ in expired_ids)
                conn.execute(
                    f"UPDATE quotes SET status = ?, updated_at = ? WHERE id IN ({id_placeholders})",
                    (QuoteStatus.EXPIRED.value, format_timestamp(self._clock()), *expired_ids),
                )
        if expired_ids:
            logger.info("quotes_expired", count=len(expired_ids), session_id=session_id)
        return expired_ids

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def _get_by_id(self, conn: sqlite3.Connection, quote_id: str) -> Quote:
        row = conn.execute("SELECT * FROM quotes WHERE id = ?", (quote_id,)).fetchone()
        if row is None:
            raise NotFoundError("quote", quote_id)
        return _row_to_quote(row)

    def get(self, quote_id: str, conn: sqlite3.Connection | None = None) -> Quote:
        """Return one quote or raise :class:`NotFoundError`."""
        with self._connection(conn) as active:
            return self._get_by_id(active, quote_id)

    def rank(self, session_id: str) -> list[Quote]:
        """Return the session's quotes best-first.

        Ordered by ``ranking_score`` descending with unscored quotes last,
        ties broken by the earliest ``responded_at``.
        """
        with self._db.reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM quotes WHERE session_id = ?
                ORDER BY ranking_score IS NULL, ranking_score DESC, responded_at ASC, id ASC
                """,
                (session_id,),
            ).fetchall()
        return [_row_to_quote(row) for row in rows]

    def count_vendors(self, conn: sqlite3.Connection, session_id: str) -> int:
        """Return how many distinct vendor contacts have quoted the session."""
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM quotes WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return int(row["n"])

    def has_vendor(self, conn: sqlite3.Connection, session_id: str, vendor_contact: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM quotes WHERE session_id = ? AND vendor_contact = ?",
            (session_id, vendor_contact.strip()),
        ).fetchone()
        return row is not None
