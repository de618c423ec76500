"""
Offline write queue.

Every write the application submits goes through the queue, online or not:

    submit()   -> optimistic apply + persist entry (one local transaction)
    worker     -> POST /api/write/{table}/{action}
    confirmed  -> server data written over the optimistic row, entry deleted
    rejected   -> pre-images restored, entry kept for inspection

State machine per entry:

    queued -> in_flight -> confirmed
                        -> rejected  (server rejection or exhausted_retries)
    in_flight -> queued               (transient failure, retry with backoff)

Invariants:
    - Entries of one table are sent strictly in submission (seq) order; a
      table's head entry blocks the ones behind it until it resolves
    - Tables drain concurrently
    - The pre-image of every touched row is stored with the entry in the
      same SQLite transaction as the optimistic change
    - Resolving an entry first undoes the pending entries behind it (newest
      first), settles the entry, then re-applies them with fresh pre-images
    - Entries left in_flight by a crash or disconnect are reset to queued
      and resubmitted with the same client_request_id (the server replays
      its cached outcome)
    - Going offline cancels every worker and backoff timer

How to change safely:
    - Keep the write_queue table in the replica database; optimistic
      apply and enqueue must commit together
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import sqlite3
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import ClientSettings
from .entries import LogEntry, Operation
from .errors import OfflineWriteNotAllowed, RequestError, TransportError
from .replica import ReplicaStore, ReplicaTransaction, RowImage
from .transport import HttpTransport

logger = logging.getLogger(__name__)

EXHAUSTED_RETRIES = "exhausted_retries"


class QueueStatus(str, Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


_PENDING = (QueueStatus.QUEUED.value, QueueStatus.IN_FLIGHT.value)


def create_queue_schema(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS write_queue (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            request_id TEXT NOT NULL UNIQUE,
            table_name TEXT NOT NULL,
            action TEXT NOT NULL,
            operation TEXT NOT NULL,
            items_json TEXT NOT NULL,
            status TEXT NOT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            last_attempt_at INTEGER,
            pre_images_json TEXT,
            reason_json TEXT,
            created_at INTEGER NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_write_queue_table
            ON write_queue(table_name, status, seq);
    """)


@dataclass
class QueueEntry:
    """A persisted write request.

    Attributes:
        seq: Submission order
        request_id: client_request_id sent to the server
        table: Target table
        action: Registered action name
        operation: create, update or delete
        items: Items as submitted
        status: queued, in_flight, confirmed or rejected
        retry_count: Transient failures so far
        last_attempt_at: Unix ms of the last submission attempt
        pre_images: Row state before the optimistic change, by primary key
            (None when unknown, after a replica rebuild)
        reason: Rejection detail {code, message, items?}
        results: Per-item outcomes from the server (not persisted)
    """

    seq: int
    request_id: str
    table: str
    action: str
    operation: Operation
    items: list[dict[str, Any]]
    status: QueueStatus = QueueStatus.QUEUED
    retry_count: int = 0
    last_attempt_at: int | None = None
    pre_images: dict[str, RowImage] | None = field(default_factory=dict)
    reason: dict[str, Any] | None = None
    created_at: int = 0
    results: list[dict[str, Any]] | None = None

    @property
    def is_pending(self) -> bool:
        return self.status in (QueueStatus.QUEUED, QueueStatus.IN_FLIGHT)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> QueueEntry:
        images = row["pre_images_json"]
        return cls(
            seq=row["seq"],
            request_id=row["request_id"],
            table=row["table_name"],
            action=row["action"],
            operation=Operation(row["operation"]),
            items=json.loads(row["items_json"]),
            status=QueueStatus(row["status"]),
            retry_count=row["retry_count"],
            last_attempt_at=row["last_attempt_at"],
            pre_images=(
                {pk: RowImage.from_dict(v) for pk, v in json.loads(images).items()}
                if images is not None
                else None
            ),
            reason=json.loads(row["reason_json"]) if row["reason_json"] else None,
            created_at=row["created_at"],
        )


def _dump_images(images: dict[str, RowImage] | None) -> str | None:
    if images is None:
        return None
    return json.dumps({pk: image.to_dict() for pk, image in images.items()}, sort_keys=True)


EntryCallback = Callable[[QueueEntry], Any]
ResyncCallback = Callable[[str], Any]


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Queue listener failed")


class OfflineWriteQueue:
    """Persistent, per-table FIFO queue of write requests.

    Example:
        >>> queue = OfflineWriteQueue(store, transport, settings)
        >>> await queue.start()
        >>> entry = await queue.submit("todos", "create", [{"title": "Milk"}])
        >>> final = await queue.wait_for(entry.request_id)
    """

    def __init__(
        self,
        store: ReplicaStore,
        transport: HttpTransport,
        settings: ClientSettings,
        online: bool = True,
    ) -> None:
        self.store = store
        self.transport = transport
        self.settings = settings
        self._online = online
        self._started = False
        self._workers: dict[str, asyncio.Task] = {}
        self._nudges: dict[str, asyncio.Event] = {}
        self._capabilities: dict[tuple[str, str], dict[str, Any]] = {}
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._finished: OrderedDict[str, QueueEntry] = OrderedDict()
        self._rejected_listeners: list[EntryCallback] = []
        self._confirmed_listeners: list[EntryCallback] = []
        self._resync_listeners: list[ResyncCallback] = []
        store.add_schema(create_queue_schema)

    @property
    def online(self) -> bool:
        return self._online

    # Listeners

    def on_rejected(self, callback: EntryCallback) -> None:
        self._rejected_listeners.append(callback)

    def on_confirmed(self, callback: EntryCallback) -> None:
        self._confirmed_listeners.append(callback)

    def on_resync_needed(self, callback: ResyncCallback) -> None:
        """Called with a table name when a rollback had no usable pre-image."""
        self._resync_listeners.append(callback)

    # Capabilities

    def set_capabilities(self, table: str, actions: list[dict[str, Any]]) -> None:
        """Cache the server's action list for a table."""
        for action in actions:
            self._capabilities[(table, action["name"])] = action

    def capabilities(self, table: str, action: str) -> dict[str, Any] | None:
        return self._capabilities.get((table, action))

    def _operation_for(self, table: str, action: str, operation: str | None) -> Operation:
        if operation:
            return Operation(operation)
        caps = self.capabilities(table, action)
        if caps and len(caps.get("operations", ())) == 1:
            return Operation(caps["operations"][0])
        try:
            return Operation(action)
        except ValueError:
            raise ValueError(
                f"Cannot infer the operation of action '{action}' on '{table}'; pass operation="
            ) from None

    # Lifecycle

    async def start(self) -> None:
        """Reset interrupted entries and start draining."""
        with self.store.connection() as conn:
            reset = conn.execute(
                "UPDATE write_queue SET status = ? WHERE status = ?",
                (QueueStatus.QUEUED.value, QueueStatus.IN_FLIGHT.value),
            ).rowcount
        if reset:
            logger.info("Requeued interrupted writes", extra={"count": reset})
        self._started = True
        if self._online:
            for table in self._pending_tables():
                self._wake(table)

    async def stop(self) -> None:
        self._started = False
        await self._cancel_workers()

    async def set_online(self, online: bool) -> None:
        """Pause or resume submission.

        Going offline cancels workers and their backoff timers; coming back
        online restarts every table with pending entries from a fresh delay.
        """
        if online == self._online:
            return
        self._online = online
        if not online:
            await self._cancel_workers()
            with self.store.connection() as conn:
                conn.execute(
                    "UPDATE write_queue SET status = ? WHERE status = ?",
                    (QueueStatus.QUEUED.value, QueueStatus.IN_FLIGHT.value),
                )
            logger.info("Write queue paused")
        elif self._started:
            logger.info("Write queue resumed")
            for table in self._pending_tables():
                self._wake(table)

    async def _cancel_workers(self) -> None:
        workers = list(self._workers.values())
        self._workers.clear()
        for task in workers:
            task.cancel()
        for task in workers:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def on_rebuilt(self) -> None:
        """Forget pre-images after the replica was rebuilt."""
        with self.store.connection() as conn:
            conn.execute(
                "UPDATE write_queue SET pre_images_json = NULL WHERE status IN (?, ?)",
                _PENDING,
            )

    # Reads

    def get(self, request_id: str) -> QueueEntry | None:
        with self.store.connection() as conn:
            row = conn.execute(
                "SELECT * FROM write_queue WHERE request_id = ?", (request_id,)
            ).fetchone()
        return QueueEntry.from_row(row) if row else None

    def entries(
        self,
        table: str | None = None,
        status: QueueStatus | None = None,
    ) -> list[QueueEntry]:
        sql = "SELECT * FROM write_queue WHERE 1 = 1"
        params: list[Any] = []
        if table is not None:
            sql += " AND table_name = ?"
            params.append(table)
        if status is not None:
            sql += " AND status = ?"
            params.append(QueueStatus(status).value)
        sql += " ORDER BY seq"
        with self.store.connection() as conn:
            return [QueueEntry.from_row(r) for r in conn.execute(sql, params).fetchall()]

    def pending(self, table: str | None = None) -> list[QueueEntry]:
        return [e for e in self.entries(table) if e.is_pending]

    def _pending_tables(self) -> list[str]:
        with self.store.connection() as conn:
            return [
                r["table_name"]
                for r in conn.execute(
                    "SELECT DISTINCT table_name FROM write_queue WHERE status IN (?, ?)",
                    _PENDING,
                ).fetchall()
            ]

    def _head(self, table: str) -> QueueEntry | None:
        with self.store.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM write_queue
                WHERE table_name = ? AND status IN (?, ?)
                ORDER BY seq LIMIT 1
                """,
                (table, *_PENDING),
            ).fetchone()
        return QueueEntry.from_row(row) if row else None

    def dismiss(self, request_id: str) -> bool:
        """Delete a rejected entry after the caller has handled it."""
        with self.store.connection() as conn:
            return (
                conn.execute(
                    "DELETE FROM write_queue WHERE request_id = ? AND status = ?",
                    (request_id, QueueStatus.REJECTED.value),
                ).rowcount
                == 1
            )

    # Submission

    async def submit(
        self,
        table: str,
        action: str,
        items: list[dict[str, Any]],
        operation: str | None = None,
        request_id: str | None = None,
    ) -> QueueEntry:
        """Apply a write optimistically and queue it for the server.

        Raises:
            OfflineWriteNotAllowed: If offline and the action is known not to
                be offline-capable
            UnknownTableError: If the table is not registered
            ValueError: If items are empty or lack a primary key
        """
        if not items:
            raise ValueError("A write needs at least one item")
        caps = self.capabilities(table, action)
        if not self._online and caps is not None and not caps.get("offline", False):
            raise OfflineWriteNotAllowed(table, action)

        op = self._operation_for(table, action, operation)
        pk_field = self.store.schema.table(table).primary_key
        items = [dict(item) for item in items]
        if op == Operation.CREATE:
            for item in items:
                item.setdefault(pk_field, str(uuid.uuid4()))

        request_id = request_id or str(uuid.uuid4())
        now = int(time.time() * 1000)
        async with self.store.write(table) as txn:
            images = self._apply_optimistic(txn, table, op, items)
            cursor = txn.execute(
                """
                INSERT INTO write_queue
                    (request_id, table_name, action, operation, items_json, status,
                     pre_images_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request_id,
                    table,
                    action,
                    op.value,
                    json.dumps(items),
                    QueueStatus.QUEUED.value,
                    _dump_images(images),
                    now,
                ),
            )
            seq = cursor.lastrowid

        logger.debug(
            "Queued write",
            extra={"table": table, "action": action, "request_id": request_id, "seq": seq},
        )
        entry = QueueEntry(
            seq=seq,
            request_id=request_id,
            table=table,
            action=action,
            operation=op,
            items=items,
            pre_images=images,
            created_at=now,
        )
        if self._online and self._started:
            self._wake(table)
        return entry

    def _apply_optimistic(
        self,
        txn: ReplicaTransaction,
        table: str,
        op: Operation,
        items: list[dict[str, Any]],
    ) -> dict[str, RowImage]:
        pk_field = self.store.schema.table(table).primary_key
        images: dict[str, RowImage] = {}
        for item in items:
            if item.get(pk_field) is None:
                raise ValueError(f"Item has no '{pk_field}' value")
            pk = str(item[pk_field])
            if op == Operation.DELETE:
                before = txn.delete(table, pk)
            else:
                before = txn.put(table, item, merge=op == Operation.UPDATE)
            images.setdefault(pk, before)
        return images

    @staticmethod
    def _pending_after(txn: ReplicaTransaction, table: str, after_seq: int) -> list[QueueEntry]:
        rows = txn.execute(
            """
            SELECT * FROM write_queue
            WHERE table_name = ? AND seq > ? AND status IN (?, ?)
            ORDER BY seq
            """,
            (table, after_seq, *_PENDING),
        ).fetchall()
        return [QueueEntry.from_row(r) for r in rows]

    @staticmethod
    def _undo(txn: ReplicaTransaction, table: str, entries: list[QueueEntry]) -> None:
        """Take optimistic changes back off the replica, newest first."""
        for entry in reversed(entries):
            for pk, image in (entry.pre_images or {}).items():
                txn.restore(table, pk, image)

    def _reapply(self, txn: ReplicaTransaction, table: str, entries: list[QueueEntry]) -> None:
        """Apply entries again in order, recording fresh pre-images."""
        for entry in entries:
            images = self._apply_optimistic(txn, table, entry.operation, entry.items)
            txn.execute(
                "UPDATE write_queue SET pre_images_json = ? WHERE seq = ?",
                (_dump_images(images), entry.seq),
            )

    async def reapply_optimistic(self, table: str) -> int:
        """Re-apply pending writes on top of freshly snapshotted rows.

        Returns:
            Number of entries re-applied
        """
        async with self.store.write(table) as txn:
            entries = self._pending_after(txn, table, 0)
            self._reapply(txn, table, entries)
        count = len(entries)
        if count:
            logger.debug("Re-applied pending writes", extra={"table": table, "count": count})
        return count

    # Worker

    def _wake(self, table: str) -> None:
        nudge = self._nudges.setdefault(table, asyncio.Event())
        nudge.set()
        task = self._workers.get(table)
        if task is None or task.done():
            self._workers[table] = asyncio.create_task(self._drain(table))

    def nudge(self, request_id: str) -> bool:
        """Cut the backoff of a pending entry short (e.g. on a rejection entry)."""
        entry = self.get(request_id)
        if entry is None or not entry.is_pending:
            return False
        if self._online and self._started:
            self._wake(entry.table)
        return True

    async def handle_rejection_entry(self, entry: LogEntry) -> bool:
        """React to a rejected log entry for one of our requests.

        The server's cached outcome is authoritative, so a matching pending
        entry is resubmitted right away instead of waiting out its backoff.
        """
        if not entry.request_id:
            return False
        return self.nudge(entry.request_id)

    async def _drain(self, table: str) -> None:
        nudge = self._nudges.setdefault(table, asyncio.Event())
        while self._online:
            entry = self._head(table)
            if entry is None:
                return
            nudge.clear()
            if await self._attempt(entry):
                continue
            delay = self.settings.backoff_delay(entry.retry_count)
            try:
                await asyncio.wait_for(nudge.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _attempt(self, entry: QueueEntry) -> bool:
        """Submit one entry.

        Returns:
            True if the entry reached a terminal state
        """
        now = int(time.time() * 1000)
        with self.store.connection() as conn:
            conn.execute(
                "UPDATE write_queue SET status = ?, last_attempt_at = ? WHERE seq = ?",
                (QueueStatus.IN_FLIGHT.value, now, entry.seq),
            )
        entry.status = QueueStatus.IN_FLIGHT
        entry.last_attempt_at = now

        try:
            body = await self.transport.submit(
                entry.table,
                entry.action,
                entry.request_id,
                entry.items,
                operation=entry.operation.value,
            )
        except TransportError as e:
            retry_count = entry.retry_count + 1
            if retry_count > self.settings.max_retries:
                logger.warning(
                    "Write exhausted retries",
                    extra={"request_id": entry.request_id, "table": entry.table, "error": str(e)},
                )
                await self._reject(
                    entry,
                    {"code": EXHAUSTED_RETRIES, "message": str(e)},
                    retry_count=retry_count,
                )
                return True
            with self.store.connection() as conn:
                conn.execute(
                    "UPDATE write_queue SET status = ?, retry_count = ? WHERE seq = ?",
                    (QueueStatus.QUEUED.value, retry_count, entry.seq),
                )
            entry.status = QueueStatus.QUEUED
            entry.retry_count = retry_count
            logger.info(
                "Write failed, will retry",
                extra={"request_id": entry.request_id, "attempt": retry_count, "error": str(e)},
            )
            return False
        except RequestError as e:
            await self._reject(
                entry,
                {"code": e.code.lower(), "message": e.message, "status": e.status},
            )
            return True

        results = body.get("results", [])
        entry.results = results
        rejected = [i for i, r in enumerate(results) if r.get("status") == "rejected"]
        if rejected:
            first = results[rejected[0]].get("reason") or {}
            await self._reject(
                entry,
                {
                    "code": first.get("code", "rejected"),
                    "message": first.get("message", ""),
                    "items": results,
                },
                indexes=rejected,
                confirmed=[r.get("data") for r in results if r.get("status") == "success"],
            )
        else:
            await self._confirm(entry, [r.get("data") for r in results])
        return True

    async def _confirm(self, entry: QueueEntry, data: list[dict[str, Any] | None]) -> None:
        async with self.store.write(entry.table) as txn:
            later = self._pending_after(txn, entry.table, entry.seq)
            self._undo(txn, entry.table, later)
            for row in data:
                if row:
                    txn.confirm(entry.table, row)
            txn.execute("DELETE FROM write_queue WHERE seq = ?", (entry.seq,))
            self._reapply(txn, entry.table, later)
        entry.status = QueueStatus.CONFIRMED
        logger.debug("Write confirmed", extra={"request_id": entry.request_id, "table": entry.table})
        await self._finish(entry, self._confirmed_listeners)

    async def _reject(
        self,
        entry: QueueEntry,
        reason: dict[str, Any],
        indexes: list[int] | None = None,
        confirmed: list[dict[str, Any] | None] | None = None,
        retry_count: int | None = None,
    ) -> None:
        pk_field = self.store.schema.table(entry.table).primary_key
        targets = range(len(entry.items)) if indexes is None else indexes
        pks = list(dict.fromkeys(str(entry.items[i].get(pk_field)) for i in targets))

        current = self.get(entry.request_id)
        images = current.pre_images if current else entry.pre_images
        resync = images is None

        async with self.store.write(entry.table) as txn:
            later = self._pending_after(txn, entry.table, entry.seq) if images is not None else []
            self._undo(txn, entry.table, later)
            for row in confirmed or ():
                if row:
                    txn.confirm(entry.table, row)
            if images is not None:
                for pk in pks:
                    if pk in images:
                        txn.restore(entry.table, pk, images[pk])
                self._reapply(txn, entry.table, later)
            txn.execute(
                """
                UPDATE write_queue
                SET status = ?, reason_json = ?, retry_count = COALESCE(?, retry_count)
                WHERE seq = ?
                """,
                (QueueStatus.REJECTED.value, json.dumps(reason), retry_count, entry.seq),
            )

        entry.status = QueueStatus.REJECTED
        entry.reason = reason
        if retry_count is not None:
            entry.retry_count = retry_count
        logger.warning(
            "Write rejected",
            extra={
                "request_id": entry.request_id,
                "table": entry.table,
                "code": reason.get("code"),
            },
        )
        if resync:
            for callback in self._resync_listeners:
                await _call(callback, entry.table)
        await self._finish(entry, self._rejected_listeners)

    async def _finish(self, entry: QueueEntry, listeners: list[EntryCallback]) -> None:
        self._finished[entry.request_id] = entry
        while len(self._finished) > 1000:
            self._finished.popitem(last=False)
        for future in self._waiters.pop(entry.request_id, []):
            if not future.done():
                future.set_result(entry)
        for callback in listeners:
            await _call(callback, entry)

    async def wait_for(self, request_id: str, timeout: float | None = None) -> QueueEntry:
        """Wait until an entry is confirmed or rejected.

        Confirmed entries are deleted from write_queue and only the last
        1000 outcomes are kept in memory, so a request confirmed before the
        queue was reopened is unknown here. Rejected entries stay on disk
        and are returned across restarts.

        Raises:
            KeyError: If the request id is unknown, including one confirmed
                by an earlier process
            asyncio.TimeoutError: If timeout elapses first
        """
        if request_id in self._finished:
            return self._finished[request_id]
        entry = self.get(request_id)
        if entry is None:
            raise KeyError(request_id)
        if not entry.is_pending:
            return entry
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(request_id, []).append(future)
        return await asyncio.wait_for(future, timeout=timeout)
