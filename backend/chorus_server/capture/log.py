"""
Durable harmonic log backed by SQLite.

The log is the single ordered source of change events. Entries are appended
inside the same transaction as the record mutation they describe, broadcast
later by the dispatcher and served to clients for incremental catch-up.

Invariants:
    - Ids are assigned inside BEGIN IMMEDIATE, so commit order equals id order
    - mutation_id is unique; appending the same mutation twice returns the
      existing entry
    - processed_at goes from NULL to a timestamp exactly once
    - Entries are never updated otherwise; prune() only removes processed ones

How to change safely:
    - Keep the conditional UPDATE in mark_processed(); concurrent
      dispatchers depend on its rowcount
    - New columns need defaults so old rows stay readable

Table schema:
    harmonics:
        - id TEXT PRIMARY KEY (sortable)
        - mutation_id TEXT UNIQUE
        - table_name TEXT
        - record_id TEXT
        - operation TEXT (create/update/delete)
        - payload_json TEXT (NULL for delete)
        - scope_key TEXT
        - request_id TEXT
        - rejected INTEGER
        - rejected_reason TEXT
        - created_at INTEGER (Unix ms)
        - processed_at INTEGER (Unix ms, NULL until broadcast)

    log_meta:
        - key TEXT PRIMARY KEY
        - value TEXT
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Callable, Sequence
from typing import Any

from ..store.database import Database, Transaction
from .harmonic import Harmonic, Operation, next_harmonic_id

logger = logging.getLogger(__name__)


class HarmonicLogError(Exception):
    """Base exception for harmonic log operations."""

    pass


class CursorExpiredError(HarmonicLogError):
    """Requested cursor is older than the retained log.

    The caller must fall back to a full snapshot.
    """

    def __init__(self, cursor: str, pruned_through: str) -> None:
        super().__init__(f"Cursor {cursor} predates retained log (pruned through {pruned_through})")
        self.cursor = cursor
        self.pruned_through = pruned_through


HarmonicListener = Callable[[Harmonic], None]


def create_log_schema(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS harmonics (
            id TEXT PRIMARY KEY,
            mutation_id TEXT UNIQUE,
            table_name TEXT NOT NULL,
            record_id TEXT NOT NULL,
            operation TEXT NOT NULL,
            payload_json TEXT,
            scope_key TEXT NOT NULL DEFAULT '',
            request_id TEXT,
            rejected INTEGER NOT NULL DEFAULT 0,
            rejected_reason TEXT,
            created_at INTEGER NOT NULL,
            processed_at INTEGER
        );

        CREATE INDEX IF NOT EXISTS idx_harmonics_record
            ON harmonics(table_name, record_id);
        CREATE INDEX IF NOT EXISTS idx_harmonics_unprocessed
            ON harmonics(processed_at, id);
        CREATE INDEX IF NOT EXISTS idx_harmonics_scope
            ON harmonics(table_name, scope_key, id);

        CREATE TABLE IF NOT EXISTS log_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
    """)


def _row_to_harmonic(row: sqlite3.Row) -> Harmonic:
    payload = json.loads(row["payload_json"]) if row["payload_json"] is not None else None
    return Harmonic(
        id=row["id"],
        table=row["table_name"],
        record_id=row["record_id"],
        operation=Operation(row["operation"]),
        payload=payload,
        scope_key=row["scope_key"],
        created_at=row["created_at"],
        processed_at=row["processed_at"],
        mutation_id=row["mutation_id"],
        rejected=bool(row["rejected"]),
        rejected_reason=row["rejected_reason"],
        request_id=row["request_id"],
    )


class HarmonicLog:
    """Append-only change log stored next to the records it describes.

    Example:
        >>> log = HarmonicLog(db)
        >>> async with db.write_transaction() as txn:
        ...     entry = log.append(txn, table="todos", record_id="1",
        ...                        operation=Operation.CREATE,
        ...                        payload={"id": "1"}, scope_key="user.7")
        >>> await log.mark_processed(entry.id)
        True
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self._listeners: list[HarmonicListener] = []
        db.add_schema(create_log_schema)

    def add_listener(self, listener: HarmonicListener) -> None:
        """Register a callback invoked after an appended entry commits."""
        self._listeners.append(listener)

    def _notify(self, entry: Harmonic) -> None:
        for listener in self._listeners:
            listener(entry)

    def append(
        self,
        txn: Transaction,
        *,
        table: str,
        record_id: str,
        operation: Operation,
        payload: dict[str, Any] | None,
        scope_key: str,
        mutation_id: str | None = None,
        request_id: str | None = None,
        rejected: bool = False,
        rejected_reason: str | None = None,
    ) -> Harmonic:
        """Append an entry inside an open write transaction.

        Args:
            txn: Open write transaction
            table: Tracked table name
            record_id: Primary key of the record
            operation: Mutation kind
            payload: Synced fields (None for delete)
            scope_key: Routing key
            mutation_id: Dedup key for the physical mutation
            request_id: Originating client_request_id
            rejected: Whether this reports a rejected write
            rejected_reason: Reason for the rejection

        Returns:
            The appended entry, or the existing one if mutation_id was
            already logged
        """
        if mutation_id is not None:
            row = txn.execute(
                "SELECT * FROM harmonics WHERE mutation_id = ?", (mutation_id,)
            ).fetchone()
            if row is not None:
                logger.debug(
                    "Mutation already captured",
                    extra={"mutation_id": mutation_id, "harmonic_id": row["id"]},
                )
                return _row_to_harmonic(row)

        if operation == Operation.DELETE:
            payload = None

        now = int(time.time() * 1000)
        harmonic_id = next_harmonic_id(self.latest_id(txn.conn), now)

        txn.execute(
            """
            INSERT INTO harmonics (id, mutation_id, table_name, record_id, operation,
                                   payload_json, scope_key, request_id, rejected,
                                   rejected_reason, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                harmonic_id,
                mutation_id,
                table,
                record_id,
                operation.value,
                json.dumps(payload) if payload is not None else None,
                scope_key,
                request_id,
                1 if rejected else 0,
                rejected_reason,
                now,
            ),
        )

        entry = Harmonic(
            id=harmonic_id,
            table=table,
            record_id=record_id,
            operation=operation,
            payload=payload,
            scope_key=scope_key,
            created_at=now,
            mutation_id=mutation_id,
            rejected=rejected,
            rejected_reason=rejected_reason,
            request_id=request_id,
        )
        txn.after_commit(lambda: self._notify(entry))
        return entry

    def latest_id(self, conn: sqlite3.Connection, table: str | None = None) -> str | None:
        """Highest id in the log, optionally restricted to one table."""
        if table is None:
            row = conn.execute("SELECT MAX(id) AS max_id FROM harmonics").fetchone()
        else:
            row = conn.execute(
                "SELECT MAX(id) AS max_id FROM harmonics WHERE table_name = ?", (table,)
            ).fetchone()
        return row["max_id"] if row else None

    def pruned_through(self, conn: sqlite3.Connection) -> str | None:
        row = conn.execute("SELECT value FROM log_meta WHERE key = 'pruned_through'").fetchone()
        return row["value"] if row else None

    async def get(self, harmonic_id: str) -> Harmonic | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM harmonics WHERE id = ?", (harmonic_id,)).fetchone()
            return _row_to_harmonic(row) if row else None

    async def unprocessed(self, limit: int = 100) -> list[Harmonic]:
        """Entries not yet broadcast, oldest first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM harmonics WHERE processed_at IS NULL ORDER BY id LIMIT ?",
                (limit,),
            ).fetchall()
            return [_row_to_harmonic(r) for r in rows]

    async def mark_processed(self, harmonic_id: str, processed_at: int | None = None) -> bool:
        """Mark an entry broadcast.

        Returns:
            True if this call set processed_at, False if it was already set
        """
        now = processed_at or int(time.time() * 1000)
        async with self.db.write_lock():
            with self.db.connect() as conn:
                cursor = conn.execute(
                    "UPDATE harmonics SET processed_at = ? WHERE id = ? AND processed_at IS NULL",
                    (now, harmonic_id),
                )
                return cursor.rowcount == 1

    async def previous_id(self, entry: Harmonic) -> str | None:
        """Id of the entry preceding this one on the same table and scope."""
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT MAX(id) AS prev_id FROM harmonics
                WHERE table_name = ? AND scope_key = ? AND id < ?
                """,
                (entry.table, entry.scope_key, entry.id),
            ).fetchone()
            return row["prev_id"] if row else None

    def entries_after_in(
        self,
        conn: sqlite3.Connection,
        table: str,
        after: str | None,
        scope_keys: Sequence[str],
        limit: int,
    ) -> list[Harmonic]:
        """Entries for a table with id > after, restricted to scope_keys.

        Raises:
            CursorExpiredError: If after predates the retained log, or is
                missing once anything has been pruned
        """
        if not scope_keys:
            return []

        # A caller without a cursor has seen nothing, so a pruned log cannot
        # bring it up to date either.
        pruned = self.pruned_through(conn)
        if pruned is not None and (not after or after < pruned):
            raise CursorExpiredError(after or "", pruned)

        placeholders = ",".join("?" for _ in scope_keys)
        params: list[Any] = [table, *scope_keys]
        sql = f"SELECT * FROM harmonics WHERE table_name = ? AND scope_key IN ({placeholders})"
        if after is not None:
            sql += " AND id > ?"
            params.append(after)
        sql += " ORDER BY id LIMIT ?"
        params.append(limit)

        rows = conn.execute(sql, params).fetchall()
        return [_row_to_harmonic(r) for r in rows]

    async def entries_after(
        self,
        table: str,
        after: str | None,
        scope_keys: Sequence[str],
        limit: int = 500,
    ) -> list[Harmonic]:
        with self.db.connect() as conn:
            return self.entries_after_in(conn, table, after, scope_keys, limit)

    async def entries_for_record(self, table: str, record_id: str) -> list[Harmonic]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM harmonics WHERE table_name = ? AND record_id = ? ORDER BY id",
                (table, record_id),
            ).fetchall()
            return [_row_to_harmonic(r) for r in rows]

    async def prune(self, older_than_ms: int) -> int:
        """Delete broadcast entries created before older_than_ms.

        Clients holding a cursor below the pruned range get
        CursorExpiredError on catch-up and must re-snapshot.

        Returns:
            Number of deleted entries
        """
        async with self.db.write_transaction() as txn:
            row = txn.execute(
                """
                SELECT MAX(id) AS max_id FROM harmonics
                WHERE processed_at IS NOT NULL AND created_at < ?
                """,
                (older_than_ms,),
            ).fetchone()
            through = row["max_id"] if row else None
            if through is None:
                return 0

            cursor = txn.execute(
                "DELETE FROM harmonics WHERE id <= ? AND processed_at IS NOT NULL",
                (through,),
            )
            txn.execute(
                """
                INSERT INTO log_meta (key, value) VALUES ('pruned_through', ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (through,),
            )

        logger.info(
            "Pruned harmonic log",
            extra={"deleted": cursor.rowcount, "pruned_through": through},
        )
        return cursor.rowcount

    async def stats(self) -> dict[str, int]:
        with self.db.connect() as conn:
            total = conn.execute("SELECT COUNT(*) FROM harmonics").fetchone()[0]
            pending = conn.execute(
                "SELECT COUNT(*) FROM harmonics WHERE processed_at IS NULL"
            ).fetchone()[0]
            return {"harmonics": total, "unprocessed": pending}
