"""
Authoritative record store for Chorus Server.

Records of every tracked table live in one SQLite table keyed by
(table_name, record_id). Writes go through a RecordWriter bound to an open
write transaction; each create/update/delete captures its harmonic in that
same transaction.

Invariants:
    - A record mutation and its harmonic commit or roll back together
    - scope_key stored on the row equals the key of its latest harmonic
    - update() merges (PATCH semantics); the primary key cannot change

How to change safely:
    - Never write to the records table outside RecordWriter, or the change
      is invisible to clients

Table schema:
    records:
        - table_name TEXT
        - record_id TEXT
        - data_json TEXT
        - scope_key TEXT
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (table_name, record_id)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from ..capture.harmonic import Harmonic, Operation
from .database import Database, Transaction

if TYPE_CHECKING:
    from ..capture.tracker import ChangeCapture

logger = logging.getLogger(__name__)


class RecordStoreError(Exception):
    """Base exception for record store operations."""

    pass


class RecordNotFoundError(RecordStoreError):
    """Record does not exist."""

    def __init__(self, table: str, record_id: str) -> None:
        super().__init__(f"Record not found: {table}/{record_id}")
        self.table = table
        self.record_id = record_id


class RecordExistsError(RecordStoreError):
    """Record with the same primary key already exists."""

    def __init__(self, table: str, record_id: str) -> None:
        super().__init__(f"Record already exists: {table}/{record_id}")
        self.table = table
        self.record_id = record_id


def create_records_schema(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS records (
            table_name TEXT NOT NULL,
            record_id TEXT NOT NULL,
            data_json TEXT NOT NULL,
            scope_key TEXT NOT NULL DEFAULT '',
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL,
            PRIMARY KEY (table_name, record_id)
        );

        CREATE INDEX IF NOT EXISTS idx_records_scope
            ON records(table_name, scope_key);
    """)


class RecordWriter:
    """Mutations bound to one write transaction.

    Every method captures a harmonic; the returned dict is the full stored
    record after the mutation (or before it, for delete).
    """

    def __init__(
        self,
        txn: Transaction,
        capture: ChangeCapture,
        request_id: str | None = None,
    ) -> None:
        self.txn = txn
        self.capture = capture
        self.request_id = request_id

    def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        row = self.txn.execute(
            "SELECT data_json FROM records WHERE table_name = ? AND record_id = ?",
            (table, str(record_id)),
        ).fetchone()
        return json.loads(row["data_json"]) if row else None

    def _capture(
        self,
        table: str,
        operation: Operation,
        record: dict[str, Any],
        mutation_id: str | None,
    ) -> Harmonic:
        return self.capture.capture(
            self.txn,
            table,
            operation,
            record,
            mutation_id=mutation_id,
            request_id=self.request_id,
        )

    def create(
        self,
        table: str,
        data: dict[str, Any],
        mutation_id: str | None = None,
    ) -> dict[str, Any]:
        """Insert a record, generating its primary key when absent.

        Raises:
            RecordExistsError: If the primary key is taken
        """
        entity = self.capture.entity(table)
        record = dict(data)
        if record.get(entity.primary_key) in (None, ""):
            record[entity.primary_key] = str(uuid.uuid4())
        record_id = str(record[entity.primary_key])

        if self.get(table, record_id) is not None:
            raise RecordExistsError(table, record_id)

        now = int(time.time() * 1000)
        self.txn.execute(
            """
            INSERT INTO records (table_name, record_id, data_json, scope_key,
                                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                table,
                record_id,
                json.dumps(record),
                self.capture.resolver.resolve(record),
                now,
                now,
            ),
        )
        self._capture(table, Operation.CREATE, record, mutation_id)
        return record

    def update(
        self,
        table: str,
        record_id: str,
        patch: dict[str, Any],
        mutation_id: str | None = None,
    ) -> dict[str, Any]:
        """Merge patch into an existing record.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        entity = self.capture.entity(table)
        record_id = str(record_id)
        existing = self.get(table, record_id)
        if existing is None:
            raise RecordNotFoundError(table, record_id)

        record = {**existing, **patch, entity.primary_key: existing[entity.primary_key]}
        self.txn.execute(
            """
            UPDATE records SET data_json = ?, scope_key = ?, updated_at = ?
            WHERE table_name = ? AND record_id = ?
            """,
            (
                json.dumps(record),
                self.capture.resolver.resolve(record),
                int(time.time() * 1000),
                table,
                record_id,
            ),
        )
        self._capture(table, Operation.UPDATE, record, mutation_id)
        return record

    def delete(
        self,
        table: str,
        record_id: str,
        mutation_id: str | None = None,
    ) -> dict[str, Any]:
        """Delete a record.

        Returns:
            The record as it was before deletion

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        record_id = str(record_id)
        existing = self.get(table, record_id)
        if existing is None:
            raise RecordNotFoundError(table, record_id)

        self.txn.execute(
            "DELETE FROM records WHERE table_name = ? AND record_id = ?",
            (table, record_id),
        )
        self._capture(table, Operation.DELETE, existing, mutation_id)
        return existing


class RecordStore:
    """SQLite store for authoritative records of tracked tables.

    Example:
        >>> store = RecordStore(db, capture)
        >>> async with store.writer() as w:
        ...     todo = w.create("todos", {"title": "Buy milk", "user_id": "7"})
        >>> await store.get("todos", todo["id"])
    """

    def __init__(self, db: Database, capture: ChangeCapture) -> None:
        self.db = db
        self.capture = capture
        db.add_schema(create_records_schema)

    @asynccontextmanager
    async def writer(self, request_id: str | None = None) -> AsyncIterator[RecordWriter]:
        """Open a write transaction and yield a RecordWriter bound to it."""
        async with self.db.write_transaction() as txn:
            yield RecordWriter(txn, self.capture, request_id=request_id)

    async def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT data_json FROM records WHERE table_name = ? AND record_id = ?",
                (table, str(record_id)),
            ).fetchone()
            return json.loads(row["data_json"]) if row else None

    def rows_in(
        self,
        conn: sqlite3.Connection,
        table: str,
        scope_keys: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Rows of a table, optionally restricted to scope keys."""
        sql = "SELECT data_json FROM records WHERE table_name = ?"
        params: list[Any] = [table]
        if scope_keys is not None:
            if not scope_keys:
                return []
            sql += f" AND scope_key IN ({','.join('?' for _ in scope_keys)})"
            params.extend(scope_keys)
        sql += " ORDER BY record_id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [json.loads(r["data_json"]) for r in conn.execute(sql, params).fetchall()]

    async def rows(
        self,
        table: str,
        scope_keys: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        with self.db.connect() as conn:
            return self.rows_in(conn, table, scope_keys, limit)

    async def count(self, table: str) -> int:
        with self.db.connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM records WHERE table_name = ?", (table,)
            ).fetchone()[0]
