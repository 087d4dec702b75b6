"""Token ledger: per-profile balances with an append-only entry trail.

Every balance change goes through :meth:`LedgerTransaction.apply_delta`,
which reads the balance, checks it, writes the new balance and (for a
non-zero delta) one ledger entry on the same connection.  The enclosing
:meth:`Ledger.atomic` block holds the per-account locks for the touched
profiles and a single SQLite write transaction, so either every write in
the block lands or none does.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Any

import structlog

from brokerage.domain.errors import (
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from brokerage.domain.models import LedgerAccount, LedgerEntry, TransferResult
from brokerage.state.db import Database
from brokerage.state.serializers import (
    dump_json,
    format_timestamp,
    load_json,
    parse_timestamp,
    utc_now,
)

logger = structlog.get_logger()


def _require_int(name: str, value: Any) -> int:
    # bool is an int subclass; a True delta is a caller bug, not one token.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer number of tokens")
    return value


class AccountLocks:
    """Registry of one exclusive lock per ledger profile.

    Locks are always acquired in sorted profile order, so two transfers
    sharing accounts cannot deadlock and transfers over disjoint accounts
    never wait on each other.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, profile_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(profile_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[profile_id] = lock
            return lock

    @contextmanager
    def hold(self, profile_ids: Iterable[str]) -> Iterator[None]:
        """Hold the locks for every profile in *profile_ids*."""
        with ExitStack() as stack:
            for profile_id in sorted(set(profile_ids)):
                stack.enter_context(self._lock_for(profile_id))
            yield


class LedgerTransaction:
    """Balance operations bound to one open write transaction.

    Obtained from :meth:`Ledger.atomic`; never constructed directly.
    """

    def __init__(self, conn: sqlite3.Connection, now: datetime, profile_ids: set[str]) -> None:
        self.conn = conn
        self._now = format_timestamp(now)
        self._profile_ids = profile_ids

    def _load_balance(self, profile_id: str) -> tuple[int, int]:
        if profile_id not in self._profile_ids:
            raise RuntimeError(f"profile '{profile_id}' is not locked by this transaction")
        row = self.conn.execute(
            "SELECT balance, pending FROM ledger_accounts WHERE profile_id = ?",
            (profile_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError("profile", profile_id)
        return int(row["balance"]), int(row["pending"])

    def apply_delta(
        self,
        profile_id: str,
        delta: int,
        entry_type: str,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[int, int | None]:
        """Apply *delta* to the profile's balance.

        Args:
            profile_id: The account owner.
            delta: Signed token amount.
            entry_type: Free-form ledger category (``"transfer_out"``, ...).
            metadata: Extra context stored on the ledger entry.

        Returns:
            ``(new_balance, entry_id)``; ``entry_id`` is ``None`` for a zero
            delta because zero deltas are not recorded.

        Raises:
            NotFoundError: If the profile has no account.
            InsufficientBalanceError: If the balance would go negative.
        """
        delta = _require_int("delta", delta)
        balance, _ = self._load_balance(profile_id)
        new_balance = balance + delta
        if new_balance < 0:
            raise InsufficientBalanceError(profile_id, balance, delta)
        if delta == 0:
            return balance, None

        self.conn.execute(
            "UPDATE ledger_accounts SET balance = ?, updated_at = ? WHERE profile_id = ?",
            (new_balance, self._now, profile_id),
        )
        cursor = self.conn.execute(
            """
            INSERT INTO ledger_entries (
                profile_id, delta, type, metadata, balance_after, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (profile_id, delta, entry_type, dump_json(metadata), new_balance, self._now),
        )
        return new_balance, int(cursor.lastrowid or 0)

    def move_pending(self, profile_id: str, amount: int, entry_type: str) -> LedgerAccount:
        """Move *amount* from balance to pending (positive) or back (negative)."""
        balance, pending = self._load_balance(profile_id)
        if balance - amount < 0:
            raise InsufficientBalanceError(profile_id, balance, -amount)
        if pending + amount < 0:
            raise ValidationError(
                f"cannot release {-amount} tokens; only {pending} are reserved"
            )
        new_balance, _ = self.apply_delta(
            profile_id, -amount, entry_type, {"pending_delta": amount}
        )
        self.conn.execute(
            "UPDATE ledger_accounts SET pending = ?, updated_at = ? WHERE profile_id = ?",
            (pending + amount, self._now, profile_id),
        )
        return LedgerAccount(profile_id=profile_id, balance=new_balance, pending=pending + amount)


class Ledger:
    """Token ledger backed by the ``ledger_accounts`` / ``ledger_entries`` tables.

    Args:
        db: The engine database.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock
        self._locks = AccountLocks()

    @contextmanager
    def atomic(self, profile_ids: Iterable[str]) -> Iterator[LedgerTransaction]:
        """Lock *profile_ids* and open one write transaction over them.

        Everything done through the yielded :class:`LedgerTransaction` (and
        any extra statements issued on ``tx.conn``) commits together or not
        at all.
        """
        profiles = set(profile_ids)
        with self._locks.hold(profiles), self._db.transaction() as conn:
            yield LedgerTransaction(conn, self._clock(), profiles)

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def open_account(self, profile_id: str, initial_balance: int = 0) -> LedgerAccount:
        """Create the profile's account if it does not exist yet.

        Opening an existing account is a no-op that returns it unchanged;
        *initial_balance* is only credited on first creation.
        """
        if not profile_id or not profile_id.strip():
            raise ValidationError("profile_id must not be empty")
        initial_balance = _require_int("initial_balance", initial_balance)
        if initial_balance < 0:
            raise ValidationError("initial_balance must not be negative")

        with self.atomic([profile_id]) as tx:
            now = format_timestamp(self._clock())
            cursor = tx.conn.execute(
                """
                INSERT OR IGNORE INTO ledger_accounts (
                    profile_id, balance, pending, created_at, updated_at
                ) VALUES (?, 0, 0, ?, ?)
                """,
                (profile_id, now, now),
            )
            if cursor.rowcount == 1 and initial_balance:
                tx.apply_delta(profile_id, initial_balance, "opening_balance")
        if cursor.rowcount == 1:
            logger.info("ledger_account_opened", profile_id=profile_id, balance=initial_balance)
        return self.get_account(profile_id)

    def apply_delta(
        self,
        profile_id: str,
        delta: int,
        entry_type: str,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[int, int | None]:
        """Atomically apply a signed delta to one account.

        Returns:
            ``(new_balance, ledger_entry_id)``.

        Raises:
            NotFoundError: If the profile has no account.
            InsufficientBalanceError: If ``balance + delta < 0``; nothing is
                written in that case.
        """
        with self.atomic([profile_id]) as tx:
            result = tx.apply_delta(profile_id, delta, entry_type, metadata)
        logger.debug("ledger_delta_applied", profile_id=profile_id, delta=delta, type=entry_type)
        return result

    def transfer(
        self,
        from_profile: str,
        to_profile: str,
        amount: int,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> TransferResult:
        """Move *amount* tokens between two accounts atomically.

        The debit is applied first, then the credit, inside one transaction;
        if either leg fails nothing is persisted.

        Raises:
            ValidationError: For a non-positive amount or a self-transfer.
            NotFoundError: If either profile has no account.
            InsufficientBalanceError: If the source cannot cover *amount*.
        """
        amount = _require_int("amount", amount)
        if amount <= 0:
            raise ValidationError("transfer amount must be positive")
        if from_profile == to_profile:
            raise ValidationError("cannot transfer to the same profile")

        with self.atomic([from_profile, to_profile]) as tx:
            result = self.transfer_within(tx, from_profile, to_profile, amount, reason, metadata)

        logger.info(
            "ledger_transfer_completed",
            from_profile=from_profile,
            to_profile=to_profile,
            amount=amount,
            reason=reason,
        )
        return result

    @staticmethod
    def transfer_within(
        tx: LedgerTransaction,
        from_profile: str,
        to_profile: str,
        amount: int,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> TransferResult:
        """Run both legs of a transfer on an already-open transaction."""
        entry_metadata = {**(metadata or {}), "reason": reason}
        from_balance, entry_from = tx.apply_delta(
            from_profile, -amount, "transfer_out", {**entry_metadata, "counterparty": to_profile}
        )
        to_balance, entry_to = tx.apply_delta(
            to_profile, amount, "transfer_in", {**entry_metadata, "counterparty": from_profile}
        )
        return TransferResult(
            from_balance=from_balance,
            to_balance=to_balance,
            entry_from=entry_from or 0,
            entry_to=entry_to or 0,
        )

    def reserve(self, profile_id: str, amount: int) -> LedgerAccount:
        """Move *amount* tokens from the spendable balance into ``pending``."""
        amount = _require_int("amount", amount)
        if amount <= 0:
            raise ValidationError("reserve amount must be positive")
        with self.atomic([profile_id]) as tx:
            return tx.move_pending(profile_id, amount, "reserve")

    def release(self, profile_id: str, amount: int) -> LedgerAccount:
        """Return *amount* previously reserved tokens to the spendable balance."""
        amount = _require_int("amount", amount)
        if amount <= 0:
            raise ValidationError("release amount must be positive")
        with self.atomic([profile_id]) as tx:
            return tx.move_pending(profile_id, -amount, "release")

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get_account(self, profile_id: str) -> LedgerAccount:
        """Return the profile's account or raise :class:`NotFoundError`."""
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT profile_id, balance, pending, updated_at FROM ledger_accounts "
                "WHERE profile_id = ?",
                (profile_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError("profile", profile_id)
        return LedgerAccount(
            profile_id=row["profile_id"],
            balance=row["balance"],
            pending=row["pending"],
            updated_at=parse_timestamp(row["updated_at"]),
        )

    def list_entries(self, profile_id: str, limit: int = 50) -> list[LedgerEntry]:
        """Return the profile's most recent ledger entries, newest first."""
        with self._db.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM ledger_entries WHERE profile_id = ? ORDER BY id DESC LIMIT ?",
                (profile_id, limit),
            ).fetchall()
        return [
            LedgerEntry(
                id=row["id"],
                profile_id=row["profile_id"],
                delta=row["delta"],
                type=row["type"],
                metadata=load_json(row["metadata"]),
                balance_after=row["balance_after"],
                created_at=parse_timestamp(row["created_at"]),
            )
            for row in rows
        ]
