"""Idempotency gateway for mutating commands.

A client-supplied key makes a command safe to retry: the first request with
a key runs the command and stores its response, every later request with the
same key gets the stored response back instead of running it again.

Records live in the ``idempotency_records`` table so that every worker
sharing the database sees them.  A request that arrives while the first one
is still running waits for it (in-process event plus polling of the row)
rather than running the command a second time.

Outcomes:

- 2xx/4xx responses are stored and replayed for ``success_ttl`` seconds.
  Domain errors are deterministic for a given request, so replaying them is
  what a retrying client should see.
- 5xx responses and unexpected exceptions drop the record; waiters for that
  execution receive a failure and the next fresh request runs again.
- A record pending longer than ``pending_ttl`` seconds is abandoned: its
  waiters get a synthetic ``504`` and the record is removed.
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, cast

import structlog
from pydantic import BaseModel, ConfigDict, Field

from brokerage.domain.errors import IdempotencyKeyReusedError, ValidationError
from brokerage.domain.models import IdempotencyRecord
from brokerage.state.db import Database
from brokerage.state.serializers import (
    dump_json,
    format_timestamp,
    load_json,
    parse_timestamp,
    utc_now,
)

logger = structlog.get_logger()

MIN_KEY_LENGTH = 16
MAX_KEY_LENGTH = 255


class CommandResult(BaseModel):
    """Response of a command as seen by the caller.

    ``replayed`` is set when the response came from the idempotency store
    rather than from running the command.
    """

    model_config = ConfigDict(frozen=True)

    status_code: int
    body: dict[str, Any] = Field(default_factory=dict)
    replayed: bool = False


TIMED_OUT_RESULT = CommandResult(
    status_code=504,
    body={
        "error": "idempotent_request_timed_out",
        "message": "Idempotent request timed out",
    },
)

FAILED_RESULT = CommandResult(
    status_code=500,
    body={
        "error": "idempotent_request_failed",
        "message": "The original request failed; retry with the same key",
    },
)


def canonical_request_hash(scope: str, payload: dict[str, Any]) -> str:
    """Hash a command scope and payload independently of key order."""
    body_text = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{scope}\n{body_text}".encode()).hexdigest()


def validate_key(key: str) -> str:
    """Return *key* stripped, or raise :class:`ValidationError`."""
    key = key.strip()
    if not MIN_KEY_LENGTH <= len(key) <= MAX_KEY_LENGTH:
        raise ValidationError(
            f"Idempotency-Key must be {MIN_KEY_LENGTH}-{MAX_KEY_LENGTH} characters"
        )
    return key


def _row_to_record(row: Any) -> IdempotencyRecord:
    return IdempotencyRecord(
        key=row["key"],
        scope=row["scope"],
        request_hash=row["request_hash"],
        status_code=row["status_code"],
        body=load_json(row["body"]) if row["body"] is not None else None,
        created_at=parse_timestamp(row["created_at"]),
        finalized_at=parse_timestamp(row["finalized_at"]),
    )


class IdempotencyGateway:
    """Run commands at most once per idempotency key.

    Args:
        db: The engine database.
        success_ttl_seconds: How long a finalized response is replayed.
        pending_ttl_seconds: How long an in-flight request may stay pending.
        poll_interval: Seconds between storage polls while waiting.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        db: Database,
        success_ttl_seconds: int = 86_400,
        pending_ttl_seconds: int = 60,
        poll_interval: float = 0.05,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._success_ttl = timedelta(seconds=success_ttl_seconds)
        self._pending_ttl = timedelta(seconds=pending_ttl_seconds)
        self._poll_interval = poll_interval
        self._clock = clock
        self._guard = threading.Lock()
        self._events: dict[str, threading.Event] = {}

    def execute(
        self,
        key: str | None,
        scope: str,
        payload: dict[str, Any],
        operation: Callable[[], CommandResult],
    ) -> CommandResult:
        """Run *operation* once for *key*, replaying its stored result after.

        Args:
            key: Client idempotency key; ``None`` runs the command unguarded.
            scope: Command name; a key is bound to one scope.
            payload: The request, hashed to detect key reuse.
            operation: Runs the command and returns its response.

        Raises:
            ValidationError: Malformed key.
            IdempotencyKeyReusedError: Key already used for another request.
        """
        if not key:
            logger.warning("idempotency_key_missing", scope=scope)
            return operation()

        key = validate_key(key)
        request_hash = canonical_request_hash(scope, payload)

        record, owner = self._claim(key, scope, request_hash)
        if owner:
            return self._run(key, scope, record, operation)
        if not record.is_pending:
            logger.info("idempotent_replay", idempotency_key=key, scope=scope)
            return self._replay(record)
        logger.info("idempotent_request_waiting", idempotency_key=key, scope=scope)
        return self._wait(record)

    def get(self, key: str) -> IdempotencyRecord | None:
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT * FROM idempotency_records WHERE key = ?", (key,)
            ).fetchone()
        return _row_to_record(row) if row else None

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete finalized records past the success TTL and stale pending ones.

        Returns:
            The number of records removed.
        """
        now = now or self._clock()
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM idempotency_records
                WHERE (finalized_at IS NOT NULL AND finalized_at <= ?)
                   OR (finalized_at IS NULL AND created_at <= ?)
                """,
                (
                    format_timestamp(now - self._success_ttl),
                    format_timestamp(now - self._pending_ttl),
                ),
            )
        purged = cursor.rowcount
        if purged:
            logger.info("idempotency_records_purged", count=purged)
        return purged

    # ------------------------------------------------------------------

    def _claim(self, key: str, scope: str, request_hash: str) -> tuple[IdempotencyRecord, bool]:
        """Return ``(record, owner)``; ``owner`` means this caller must run it."""
        now = self._clock()
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM idempotency_records WHERE key = ?", (key,)
            ).fetchone()
            if row is not None:
                existing = _row_to_record(row)
                if existing.scope != scope or existing.request_hash != request_hash:
                    raise IdempotencyKeyReusedError(key)
                if existing.is_pending or existing.finalized_at is None:
                    expired = existing.created_at + self._pending_ttl <= now
                else:
                    expired = existing.finalized_at + self._success_ttl <= now
                if not expired:
                    return existing, False
                conn.execute("DELETE FROM idempotency_records WHERE key = ?", (key,))
                logger.info("idempotency_record_expired", idempotency_key=key)

            conn.execute(
                """
                INSERT INTO idempotency_records (key, scope, request_hash, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (key, scope, request_hash, format_timestamp(now)),
            )
        with self._guard:
            self._events[key] = threading.Event()
        record = IdempotencyRecord(
            key=key, scope=scope, request_hash=request_hash, created_at=now
        )
        return record, True

    def _run(
        self,
        key: str,
        scope: str,
        record: IdempotencyRecord,
        operation: Callable[[], CommandResult],
    ) -> CommandResult:
        try:
            try:
                result = operation()
            except BaseException:
                self._drop(record)
                raise

            if result.status_code >= 500:
                logger.warning(
                    "idempotent_request_failed",
                    idempotency_key=key,
                    scope=scope,
                    status_code=result.status_code,
                )
                self._drop(record)
            else:
                self._finalize(record, result)
            return result
        finally:
            # Only after the record is finalized or dropped.
            with self._guard:
                event = self._events.pop(key, None)
            if event is not None:
                event.set()

    def _finalize(self, record: IdempotencyRecord, result: CommandResult) -> None:
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE idempotency_records
                SET status_code = ?, body = ?, finalized_at = ?
                WHERE key = ? AND created_at = ? AND finalized_at IS NULL
                """,
                (
                    result.status_code,
                    dump_json(result.body),
                    format_timestamp(self._clock()),
                    record.key,
                    format_timestamp(record.created_at),
                ),
            )
        if cursor.rowcount != 1:
            # The record timed out and was dropped while the command ran.
            logger.warning("idempotency_finalize_lost", idempotency_key=record.key)
        else:
            logger.debug(
                "idempotent_response_stored",
                idempotency_key=record.key,
                status_code=result.status_code,
            )

    def _drop(self, record: IdempotencyRecord) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                DELETE FROM idempotency_records
                WHERE key = ? AND created_at = ? AND finalized_at IS NULL
                """,
                (record.key, format_timestamp(record.created_at)),
            )

    @staticmethod
    def _replay(record: IdempotencyRecord) -> CommandResult:
        return CommandResult(
            status_code=cast(int, record.status_code),
            body=record.body or {},
            replayed=True,
        )

    def _wait(self, record: IdempotencyRecord) -> CommandResult:
        """Block until the in-flight request for *record* settles."""
        deadline = record.created_at + self._pending_ttl
        budget = max(0.0, (deadline - self._clock()).total_seconds())
        give_up_at = time.monotonic() + budget

        while True:
            current = self.get(record.key)
            if current is None or current.created_at != record.created_at:
                # The execution we waited on failed and its record was dropped.
                return FAILED_RESULT
            if not current.is_pending:
                return self._replay(current)

            remaining = give_up_at - time.monotonic()
            if remaining <= 0:
                self._drop(record)
                logger.warning("idempotent_request_timed_out", idempotency_key=record.key)
                return TIMED_OUT_RESULT

            with self._guard:
                event = self._events.get(record.key)
            pause = min(self._poll_interval, remaining)
            if event is not None:
                event.wait(pause)
            else:
                time.sleep(pause)
