"""
Client replica store.

A local SQLite mirror of the server tables the application registered. Rows
are stored as JSON keyed by (table, primary key) with expression indexes on
the declared index fields. Each table has a watermark: the highest log
entry id applied to it.

Writers:
    - HarmonicConsumer: apply_snapshot(), apply_entry() (confirmed path)
    - OfflineWriteQueue: ReplicaTransaction.put/delete/restore (optimistic path)

Invariants:
    - apply_entry() is a no-op when entry.id <= watermark[table]
    - Writes to one table are serialized by a per-table asyncio lock
    - Each row remembers the entry id that last wrote it; optimistic writes
      clear it, so restore() never overwrites newer authoritative data
    - A schema version/fingerprint change wipes rows and watermarks (full
      rebuild, never a partial migration)

How to change safely:
    - Stored row JSON is compared byte-for-byte on rollback; always write
      through _dump() so encoding stays stable

Table schema:
    replica_meta:       key TEXT PRIMARY KEY, value TEXT
    replica_watermarks: table_name TEXT PRIMARY KEY, entry_id TEXT
    replica_rows:       table_name, pk, data_json, entry_id (NULL = optimistic)
    replica_staging:    table_name, pk, data_json (snapshot load area)
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .entries import LogEntry, Operation
from .errors import ReplicaNotInitializedError, SchemaError
from .schema import ReplicaSchema

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

DEFAULT_CHUNK_SIZE = 500


def _dump(row: dict[str, Any]) -> str:
    return json.dumps(row, sort_keys=True, separators=(",", ":"))


def _index_name(table: str, field_name: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_]", "_", f"{table}__{field_name}")
    return f"idx_replica_{safe}"


@dataclass(frozen=True)
class RowImage:
    """Stored state of one row, or its absence.

    Attributes:
        data_json: Exact stored JSON text (None means the row did not exist)
        entry_id: Entry id that last wrote the row (None for optimistic rows)
    """

    data_json: str | None
    entry_id: str | None = None

    @property
    def exists(self) -> bool:
        return self.data_json is not None

    def to_dict(self) -> dict[str, Any]:
        return {"data_json": self.data_json, "entry_id": self.entry_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RowImage:
        return cls(data_json=data.get("data_json"), entry_id=data.get("entry_id"))


ABSENT = RowImage(data_json=None)


class ReplicaTransaction:
    """Row mutations inside one local write transaction."""

    def __init__(self, conn: sqlite3.Connection, schema: ReplicaSchema) -> None:
        self.conn = conn
        self.schema = schema

    def execute(self, sql: str, params: Any = ()) -> sqlite3.Cursor:
        return self.conn.execute(sql, params)

    def image(self, table: str, pk: str) -> RowImage:
        row = self.conn.execute(
            "SELECT data_json, entry_id FROM replica_rows WHERE table_name = ? AND pk = ?",
            (table, str(pk)),
        ).fetchone()
        if row is None:
            return ABSENT
        return RowImage(data_json=row["data_json"], entry_id=row["entry_id"])

    def _write(self, table: str, pk: str, data_json: str, entry_id: str | None) -> None:
        self.conn.execute(
            """
            INSERT INTO replica_rows (table_name, pk, data_json, entry_id)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(table_name, pk) DO UPDATE
            SET data_json = excluded.data_json, entry_id = excluded.entry_id
            """,
            (table, str(pk), data_json, entry_id),
        )

    def _remove(self, table: str, pk: str) -> None:
        self.conn.execute(
            "DELETE FROM replica_rows WHERE table_name = ? AND pk = ?", (table, str(pk))
        )

    def put(self, table: str, row: dict[str, Any], merge: bool = False) -> RowImage:
        """Optimistically write a row.

        Args:
            table: Table name
            row: Row data including the primary key
            merge: Merge into the existing row instead of replacing it

        Returns:
            Pre-image of the row
        """
        pk_field = self.schema.table(table).primary_key
        pk = str(row[pk_field])
        before = self.image(table, pk)
        data = dict(row)
        if merge and before.exists:
            data = {**json.loads(before.data_json), **row}
        self._write(table, pk, _dump(data), None)
        return before

    def delete(self, table: str, pk: str) -> RowImage:
        """Optimistically delete a row and return its pre-image."""
        self.schema.table(table)
        before = self.image(table, pk)
        self._remove(table, pk)
        return before

    def restore(self, table: str, pk: str, image: RowImage) -> bool:
        """Put a pre-image back.

        Skipped when an authoritative entry has written the row since the
        optimistic change.

        Returns:
            True if the row was restored
        """
        current = self.image(table, pk)
        if current.entry_id is not None and current.entry_id != image.entry_id:
            logger.debug(
                "Skipping restore, row has newer authoritative state",
                extra={"table": table, "pk": pk, "entry_id": current.entry_id},
            )
            return False
        if image.exists:
            self._write(table, pk, image.data_json, image.entry_id)
        else:
            self._remove(table, pk)
        return True

    def confirm(self, table: str, row: dict[str, Any]) -> bool:
        """Write server-returned data over a still-optimistic row.

        Returns:
            True if written (False when authoritative data already landed)
        """
        pk = str(row[self.schema.table(table).primary_key])
        current = self.image(table, pk)
        if not current.exists or current.entry_id is not None:
            return False
        self._write(table, pk, _dump(row), None)
        return True


class ReplicaStore:
    """Local mirror of registered server tables.

    Thread safety:
        Each operation opens its own SQLite connection. Writes to one table
        are serialized with an asyncio lock per table.

    Example:
        >>> store = ReplicaStore(".chorus/replica.db", schema)
        >>> rebuilt = await store.open()
        >>> await store.apply_snapshot("todos", rows, cursor)
        >>> await store.apply_entry(entry)
        >>> store.read("todos", where={"done": False})
    """

    def __init__(self, db_path: str, schema: ReplicaSchema, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.schema = schema
        self.busy_timeout_ms = busy_timeout_ms
        self._locks: dict[str, asyncio.Lock] = {}
        self._schema_hooks: list[Callable[[sqlite3.Connection], None]] = []
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def add_schema(self, hook: Callable[[sqlite3.Connection], None]) -> None:
        """Register a table creation hook for co-located state (the write queue)."""
        self._schema_hooks.append(hook)
        if self._open:
            with self._connection() as conn:
                hook(conn)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Connection for reads.

        Raises:
            ReplicaNotInitializedError: If open() was not called
        """
        if not self._open:
            raise ReplicaNotInitializedError()
        with self._connection() as conn:
            yield conn

    @contextmanager
    def _transaction(self) -> Iterator[ReplicaTransaction]:
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield ReplicaTransaction(conn, self.schema)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def lock(self, table: str) -> asyncio.Lock:
        return self._locks.setdefault(table, asyncio.Lock())

    @asynccontextmanager
    async def write(self, table: str) -> AsyncIterator[ReplicaTransaction]:
        """Serialized write transaction for one table."""
        self.schema.table(table)
        async with self.lock(table):
            with self._transaction() as txn:
                yield txn

    async def open(self) -> bool:
        """Create tables and check the registered schema.

        Returns:
            True if the store was (re)built and every table needs a snapshot

        Raises:
            SchemaError: If the rebuild fails
        """
        with self._connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS replica_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS replica_watermarks (
                    table_name TEXT PRIMARY KEY,
                    entry_id TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS replica_rows (
                    table_name TEXT NOT NULL,
                    pk TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    entry_id TEXT,
                    PRIMARY KEY (table_name, pk)
                );
                CREATE TABLE IF NOT EXISTS replica_staging (
                    table_name TEXT NOT NULL,
                    pk TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (table_name, pk)
                );
            """)
            meta = {
                r["key"]: r["value"]
                for r in conn.execute("SELECT key, value FROM replica_meta").fetchall()
            }
            stored_version = meta.get("schema_version")
            stored_fingerprint = meta.get("schema_fingerprint")
            rebuilt = (stored_version, stored_fingerprint) != (
                str(self.schema.version),
                self.schema.fingerprint,
            )
            if rebuilt:
                if stored_version is not None:
                    logger.warning(
                        "Replica schema changed, rebuilding local store",
                        extra={
                            "stored_version": stored_version,
                            "schema_version": str(self.schema.version),
                        },
                    )
                try:
                    self._rebuild(conn)
                except sqlite3.Error as e:
                    raise SchemaError(
                        f"Replica rebuild failed: {e}",
                        expected_version=str(self.schema.version),
                        actual_version=stored_version,
                    ) from e
            self._create_indexes(conn)
            conn.execute("DELETE FROM replica_staging")
            for hook in self._schema_hooks:
                hook(conn)

        self._open = True
        logger.info(
            "Replica store opened",
            extra={"path": str(self.db_path), "rebuilt": rebuilt, "tables": self.schema.table_names()},
        )
        return rebuilt

    def _rebuild(self, conn: sqlite3.Connection) -> None:
        conn.execute("BEGIN IMMEDIATE")
        try:
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'index' AND name LIKE 'idx_replica_%'"
            ).fetchall():
                conn.execute(f'DROP INDEX IF EXISTS "{row["name"]}"')
            conn.execute("DELETE FROM replica_rows")
            conn.execute("DELETE FROM replica_watermarks")
            conn.execute("DELETE FROM replica_staging")
            conn.executemany(
                """
                INSERT INTO replica_meta (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                [
                    ("schema_version", str(self.schema.version)),
                    ("schema_fingerprint", self.schema.fingerprint),
                ],
            )
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise

    def _create_indexes(self, conn: sqlite3.Connection) -> None:
        for table in self.schema:
            for field_name in table.indexes:
                conn.execute(
                    f'CREATE INDEX IF NOT EXISTS "{_index_name(table.name, field_name)}" '
                    f"ON replica_rows(table_name, json_extract(data_json, '$.{field_name}'))"
                )

    def close(self) -> None:
        self._open = False

    def get_meta(self, key: str) -> str | None:
        with self.connection() as conn:
            row = conn.execute("SELECT value FROM replica_meta WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO replica_meta (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )

    # Watermarks

    def watermark(self, table: str) -> str | None:
        """Highest applied entry id ("" after a snapshot of an empty log).

        Returns:
            None if the table has never been snapshotted
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT entry_id FROM replica_watermarks WHERE table_name = ?", (table,)
            ).fetchone()
            return row["entry_id"] if row else None

    def watermarks(self) -> dict[str, str]:
        with self.connection() as conn:
            return {
                r["table_name"]: r["entry_id"]
                for r in conn.execute("SELECT table_name, entry_id FROM replica_watermarks")
            }

    @staticmethod
    def _set_watermark(txn: ReplicaTransaction, table: str, entry_id: str) -> None:
        txn.execute(
            """
            INSERT INTO replica_watermarks (table_name, entry_id) VALUES (?, ?)
            ON CONFLICT(table_name) DO UPDATE SET entry_id = excluded.entry_id
            """,
            (table, entry_id),
        )

    # Confirmed path

    async def apply_snapshot(
        self,
        table: str,
        rows: list[dict[str, Any]],
        cursor: str | None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Replace a table's rows and set its watermark to cursor.

        Rows are staged in chunks, yielding to the event loop between
        chunks, then swapped in with one transaction. Cancelling during
        staging leaves the current rows untouched.
        """
        pk_field = self.schema.table(table).primary_key
        total = len(rows)
        step = max(1, chunk_size)

        async with self.lock(table):
            try:
                with self._transaction() as txn:
                    txn.execute("DELETE FROM replica_staging WHERE table_name = ?", (table,))
                for start in range(0, total, step):
                    chunk = rows[start : start + step]
                    with self._transaction() as txn:
                        txn.conn.executemany(
                            """
                            INSERT OR REPLACE INTO replica_staging (table_name, pk, data_json)
                            VALUES (?, ?, ?)
                            """,
                            [(table, str(r[pk_field]), _dump(r)) for r in chunk],
                        )
                    if on_progress:
                        on_progress(start + len(chunk), total)
                    await asyncio.sleep(0)

                with self._transaction() as txn:
                    txn.execute("DELETE FROM replica_rows WHERE table_name = ?", (table,))
                    txn.execute(
                        """
                        INSERT INTO replica_rows (table_name, pk, data_json, entry_id)
                        SELECT table_name, pk, data_json, ? FROM replica_staging
                        WHERE table_name = ?
                        """,
                        (cursor or "", table),
                    )
                    txn.execute("DELETE FROM replica_staging WHERE table_name = ?", (table,))
                    self._set_watermark(txn, table, cursor or "")
            except asyncio.CancelledError:
                with self._transaction() as txn:
                    txn.execute("DELETE FROM replica_staging WHERE table_name = ?", (table,))
                logger.info("Snapshot load cancelled", extra={"table": table})
                raise

        if on_progress and total == 0:
            on_progress(0, 0)
        logger.debug(
            "Applied snapshot",
            extra={"table": table, "rows": total, "cursor": cursor},
        )

    async def apply_entry(self, entry: LogEntry) -> bool:
        """Apply one log entry if it is newer than the table watermark.

        Rejected entries only advance the watermark.

        Returns:
            True if the row state changed
        """
        if not self.schema.has_table(entry.table):
            logger.debug("Ignoring entry for unregistered table", extra={"table": entry.table})
            return False

        pk_field = self.schema.table(entry.table).primary_key
        async with self.write(entry.table) as txn:
            row = txn.execute(
                "SELECT entry_id FROM replica_watermarks WHERE table_name = ?", (entry.table,)
            ).fetchone()
            if row is None:
                logger.debug(
                    "Ignoring entry for table without snapshot",
                    extra={"table": entry.table, "entry_id": entry.id},
                )
                return False
            if entry.id <= row["entry_id"]:
                return False

            self._set_watermark(txn, entry.table, entry.id)
            if entry.rejected:
                return False

            if entry.operation == Operation.DELETE:
                txn._remove(entry.table, entry.record_id)
            else:
                data = dict(entry.payload or {})
                data.setdefault(pk_field, entry.record_id)
                txn._write(entry.table, entry.record_id, _dump(data), entry.id)

        logger.debug(
            "Applied entry",
            extra={"table": entry.table, "entry_id": entry.id, "operation": entry.operation.value},
        )
        return True

    async def reset_table(self, table: str) -> None:
        """Forget a table's rows and watermark (forces a snapshot)."""
        async with self.write(table) as txn:
            txn.execute("DELETE FROM replica_rows WHERE table_name = ?", (table,))
            txn.execute("DELETE FROM replica_watermarks WHERE table_name = ?", (table,))

    # Reads

    def get(self, table: str, pk: str) -> dict[str, Any] | None:
        self.schema.table(table)
        with self.connection() as conn:
            row = conn.execute(
                "SELECT data_json FROM replica_rows WHERE table_name = ? AND pk = ?",
                (table, str(pk)),
            ).fetchone()
            return json.loads(row["data_json"]) if row else None

    def read(
        self,
        table: str,
        where: dict[str, Any] | None = None,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
    ) -> list[dict[str, Any]]:
        """Rows of a table, ordered by primary key.

        Args:
            table: Table name
            where: Field equality filter evaluated in SQLite (uses indexes)
            predicate: Extra Python-side filter

        Raises:
            UnknownTableError: If the table is not registered
        """
        self.schema.table(table)
        sql = "SELECT data_json FROM replica_rows WHERE table_name = ?"
        params: list[Any] = [table]
        for field_name, value in (where or {}).items():
            if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", field_name):
                raise ValueError(f"Invalid field name: {field_name}")
            if value is None:
                sql += f" AND json_extract(data_json, '$.{field_name}') IS NULL"
            else:
                sql += f" AND json_extract(data_json, '$.{field_name}') = ?"
                params.append(value)
        sql += " ORDER BY pk"

        with self.connection() as conn:
            rows = [json.loads(r["data_json"]) for r in conn.execute(sql, params).fetchall()]
        if predicate is not None:
            rows = [r for r in rows if predicate(r)]
        return rows

    def dump(self, table: str | None = None) -> list[tuple]:
        """Raw stored rows (table, pk, data_json), for diagnostics and tests."""
        sql = "SELECT table_name, pk, data_json FROM replica_rows"
        params: tuple = ()
        if table is not None:
            sql += " WHERE table_name = ?"
            params = (table,)
        sql += " ORDER BY table_name, pk"
        with self.connection() as conn:
            return [tuple(r) for r in conn.execute(sql, params).fetchall()]
