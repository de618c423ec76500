"""
Shared SQLite database for Chorus Server.

One SQLite file holds the authoritative records, the harmonic log and the
write idempotency cache so that a record mutation, its harmonic and the
cached write outcome commit in one transaction.

Invariants:
    - Every write runs inside BEGIN IMMEDIATE under the in-process write lock
    - A connection is opened per operation and closed afterwards
    - After-commit callbacks run only when COMMIT succeeded

How to change safely:
    - Never hold a write transaction open across unrelated awaits
    - Schema changes go through the component that owns the table
      (create_schema hooks registered with add_schema)

Table ownership:
    records         RecordStore
    harmonics       HarmonicLog
    log_meta        HarmonicLog
    write_requests  IdempotencyCache
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class Transaction:
    """An open write transaction.

    Wraps the connection and collects callbacks that must fire only after
    the transaction commits (for example, waking the broadcast dispatcher).
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._after_commit: list[Callable[[], None]] = []
        self._savepoint_seq = 0

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._after_commit.append(callback)

    def execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        return self.conn.execute(sql, params)

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """Run a block that can be rolled back without aborting the transaction.

        Callbacks registered inside a rolled-back block are discarded.
        """
        self._savepoint_seq += 1
        name = f"sp_{self._savepoint_seq}"
        mark = len(self._after_commit)
        self.conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            self.conn.execute(f"ROLLBACK TO {name}")
            self.conn.execute(f"RELEASE {name}")
            del self._after_commit[mark:]
            raise
        else:
            self.conn.execute(f"RELEASE {name}")

    def _run_after_commit(self) -> None:
        for callback in self._after_commit:
            try:
                callback()
            except Exception as e:
                logger.error(f"After-commit callback failed: {e}", exc_info=True)


class Database:
    """SQLite database file shared by the server stores.

    Thread safety:
        Each operation opens its own connection. Writers in this process
        are serialized by an asyncio lock; writers in other processes are
        serialized by SQLite's BEGIN IMMEDIATE.

    Example:
        >>> db = Database("/var/lib/chorus/chorus.db")
        >>> db.add_schema(create_tables)
        >>> await db.initialize()
        >>> async with db.write_transaction() as txn:
        ...     txn.execute("INSERT INTO ...")
    """

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the database handle.

        Args:
            db_path: Path of the SQLite file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._write_lock = asyncio.Lock()
        self._schema_hooks: list[Callable[[sqlite3.Connection], None]] = []

    def add_schema(self, hook: Callable[[sqlite3.Connection], None]) -> None:
        """Register a schema creation hook run by initialize()."""
        self._schema_hooks.append(hook)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection in autocommit mode.

        Yields:
            SQLite connection
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create every registered table if missing."""
        async with self._write_lock:
            with self.connect() as conn:
                for hook in self._schema_hooks:
                    hook(conn)
        logger.info(f"Initialized database: {self.db_path}")

    @asynccontextmanager
    async def write_transaction(self) -> AsyncIterator[Transaction]:
        """Open a write transaction.

        Commits when the block exits normally, rolls back on any exception.

        Yields:
            Transaction wrapping the connection
        """
        async with self._write_lock:
            with self.connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                txn = Transaction(conn)
                try:
                    yield txn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            txn._run_after_commit()

    @contextmanager
    def read_transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a read transaction giving a consistent view across queries."""
        with self.connect() as conn:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                conn.execute("ROLLBACK")

    @asynccontextmanager
    async def write_lock(self) -> AsyncIterator[None]:
        """Hold the in-process write lock for a single autocommit statement."""
        async with self._write_lock:
            yield
