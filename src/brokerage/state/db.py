"""SQLite connection management.

Every unit of work opens its own connection so that request threads and the
sweeper never share a ``sqlite3.Connection``.  Writes run inside
``BEGIN IMMEDIATE`` transactions: the reserved lock is taken up front, so a
read-then-write inside one transaction cannot be interleaved with another
writer, and the busy timeout makes competing writers wait instead of fail.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

logger = structlog.get_logger()


class Database:
    """Factory for short-lived SQLite connections to one database file.

    Args:
        path: Path to the SQLite database file.  In-memory databases are not
              supported because each unit of work uses a fresh connection.
        busy_timeout: Seconds a writer waits for the database lock.
    """

    def __init__(self, path: Path | str, busy_timeout: float = 30.0) -> None:
        self.path = Path(path)
        self._busy_timeout = busy_timeout

    def connect(self) -> sqlite3.Connection:
        """Open a new autocommit connection with dict-style rows.

        ``isolation_level=None`` disables the sqlite3 module's implicit
        transactions; :meth:`transaction` issues ``BEGIN`` explicitly.
        """
        conn = sqlite3.connect(
            str(self.path),
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout * 1000)}")
        return conn

    def initialize(self) -> None:
        """Create the parent directory and switch the file to WAL mode."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection for read-only queries and close it afterwards."""
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements as one atomic write transaction.

        Commits when the block exits normally and rolls back on any
        exception, which is then re-raised.
        """
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        try:
            with self.reader() as conn:
                conn.execute("SELECT 1")
            return True
        except sqlite3.Error:
            logger.warning("database_ping_failed", path=str(self.path), exc_info=True)
            return False
