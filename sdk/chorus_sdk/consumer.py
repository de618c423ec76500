"""
Harmonic consumer.

Brings each registered table up to date and keeps it there:

    initialize(table)
        no watermark      -> snapshot
        watermark         -> catch-up (GET /api/sync/{table}?after=...)
        cursor expired    -> snapshot
    run(table)
        long-poll loop applying entries as they arrive

deliver() applies entries in receipt order through ReplicaStore.apply_entry,
which drops anything at or below the table watermark; ordering per table is
the store's job, not the transport's.

Invariants:
    - A pushed entry whose previous_id is above the watermark means an entry
      was missed: the table is resynchronized, never silently patched
    - Rejected entries are reported once per id to rejection listeners and
      never change row state here (rollback belongs to the write queue)
    - Snapshot progress is reported through TableState.progress
    - A truncated snapshot is never applied: the table keeps its previous
      rows and watermark and moves to error
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .entries import LogEntry
from .errors import (
    ChorusError,
    CursorExpiredError,
    RequestError,
    SnapshotTruncatedError,
    TransportError,
)
from .replica import DEFAULT_CHUNK_SIZE, ReplicaStore
from .transport import HttpTransport

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


@dataclass
class TableState:
    """Sync state of one table.

    Attributes:
        status: idle, initializing, ready or error
        last_update: time.time() of the last applied change
        error: Last error message, cleared on recovery
        progress: Fraction of the current snapshot loaded (None when idle)
    """

    status: SyncStatus = SyncStatus.IDLE
    last_update: float | None = None
    error: str | None = None
    progress: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "last_update": self.last_update,
            "error": self.error,
            "progress": self.progress,
        }


RejectionCallback = Callable[[LogEntry], Any]
StateCallback = Callable[[str, TableState], Any]
SnapshotCallback = Callable[[str], Any]


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Consumer listener failed")


class HarmonicConsumer:
    """Applies snapshots and log entries to the replica store.

    Example:
        >>> consumer = HarmonicConsumer(store, transport)
        >>> consumer.on_rejection(lambda entry: print(entry.rejected_reason))
        >>> await consumer.initialize("todos")
        >>> consumer.start(["todos"])
    """

    def __init__(
        self,
        store: ReplicaStore,
        transport: HttpTransport,
        long_poll_wait: float = 25.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        retry_delay: Callable[[int], float] | None = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.long_poll_wait = long_poll_wait
        self.chunk_size = chunk_size
        self.retry_delay = retry_delay or (lambda attempt: min(30.0, 0.5 * 2 ** (attempt - 1)))
        self._states: dict[str, TableState] = {}
        self._seen_rejections: OrderedDict[str, None] = OrderedDict()
        self._rejection_listeners: list[RejectionCallback] = []
        self._state_listeners: list[StateCallback] = []
        self._snapshot_listeners: list[SnapshotCallback] = []
        self._tasks: dict[str, asyncio.Task] = {}

    # Listeners

    def on_rejection(self, callback: RejectionCallback) -> None:
        self._rejection_listeners.append(callback)

    def on_state(self, callback: StateCallback) -> None:
        self._state_listeners.append(callback)

    def on_snapshot(self, callback: SnapshotCallback) -> None:
        """Called with the table name after a snapshot replaced its rows."""
        self._snapshot_listeners.append(callback)

    # State

    def state(self, table: str) -> TableState:
        return self._states.setdefault(table, TableState())

    def states(self) -> dict[str, TableState]:
        return dict(self._states)

    @property
    def status(self) -> SyncStatus:
        """Overall initialization state across tables."""
        statuses = [s.status for s in self._states.values()]
        if not statuses:
            return SyncStatus.IDLE
        if SyncStatus.ERROR in statuses:
            return SyncStatus.ERROR
        if all(s == SyncStatus.READY for s in statuses):
            return SyncStatus.READY
        if all(s == SyncStatus.IDLE for s in statuses):
            return SyncStatus.IDLE
        return SyncStatus.INITIALIZING

    async def _set_state(self, table: str, **changes: Any) -> None:
        state = self.state(table)
        for name, value in changes.items():
            setattr(state, name, value)
        for callback in self._state_listeners:
            await _call(callback, table, state)

    # Initial load

    async def initialize(self, table: str, force_snapshot: bool = False) -> None:
        """Bring a table up to date.

        Raises:
            ChorusError: If the table could not be loaded (state is set to error)
        """
        await self._set_state(table, status=SyncStatus.INITIALIZING, error=None)
        try:
            if force_snapshot or self.store.watermark(table) is None:
                await self.snapshot(table)
            else:
                await self.resync(table)
        except ChorusError as e:
            await self._set_state(table, status=SyncStatus.ERROR, error=str(e), progress=None)
            raise
        await self._set_state(table, status=SyncStatus.READY, progress=None)

    async def snapshot(self, table: str) -> int:
        """Replace a table with the server's current rows.

        Returns:
            Number of rows loaded

        Raises:
            SnapshotTruncatedError: If the server sent only part of the table;
                the replica is left untouched
        """
        body = await self.transport.fetch_snapshot(table)
        rows = body.get("rows", [])
        if body.get("truncated"):
            logger.error("Server truncated snapshot", extra={"table": table, "rows": len(rows)})
            raise SnapshotTruncatedError(table, len(rows))

        state = self.state(table)

        def progress(done: int, total: int) -> None:
            state.progress = done / total if total else 1.0

        await self.store.apply_snapshot(
            table,
            rows,
            body.get("cursor"),
            chunk_size=self.chunk_size,
            on_progress=progress,
        )
        state.last_update = time.time()
        logger.info(
            "Loaded snapshot",
            extra={"table": table, "rows": len(rows), "cursor": body.get("cursor")},
        )
        for callback in self._snapshot_listeners:
            await _call(callback, table)
        return len(rows)

    async def catch_up(self, table: str) -> int:
        """Fetch and apply every entry after the watermark.

        Raises:
            CursorExpiredError: If the server no longer has the entries
        """
        applied = 0
        while True:
            body = await self.transport.fetch_changes(table, self.store.watermark(table))
            entries = [LogEntry.from_dict(e) for e in body.get("entries", [])]
            applied += await self.deliver(entries, check_gaps=False)
            if not entries or not body.get("has_more"):
                return applied

    async def resync(self, table: str) -> None:
        """Catch up, falling back to a snapshot when the cursor expired."""
        try:
            await self.catch_up(table)
        except CursorExpiredError:
            logger.info("Cursor expired, taking snapshot", extra={"table": table})
            await self.snapshot(table)

    # Live path

    async def deliver(self, entries: Iterable[LogEntry], check_gaps: bool = True) -> int:
        """Apply entries in receipt order.

        Args:
            entries: Entries from any feed (long-poll response, pushed messages)
            check_gaps: Compare previous_id against the watermark

        Returns:
            Number of entries that changed row state
        """
        applied = 0
        resynced = set()
        for entry in entries:
            if entry.table in resynced:
                continue
            watermark = self.store.watermark(entry.table)
            if watermark is None:
                logger.debug("Dropping entry for table without snapshot", extra={"table": entry.table})
                continue

            if check_gaps and entry.previous_id is not None and entry.previous_id > watermark:
                logger.warning(
                    "Ordering anomaly, resynchronizing table",
                    extra={
                        "table": entry.table,
                        "entry_id": entry.id,
                        "previous_id": entry.previous_id,
                        "watermark": watermark,
                    },
                )
                resynced.add(entry.table)
                await self.resync(entry.table)
                continue

            if entry.rejected and entry.id > watermark:
                await self._report_rejection(entry)
            if await self.store.apply_entry(entry):
                applied += 1
                self.state(entry.table).last_update = time.time()
        return applied

    async def _report_rejection(self, entry: LogEntry) -> None:
        if entry.id in self._seen_rejections:
            return
        self._seen_rejections[entry.id] = None
        while len(self._seen_rejections) > 1000:
            self._seen_rejections.popitem(last=False)
        logger.warning(
            "Write rejected by server",
            extra={
                "table": entry.table,
                "record_id": entry.record_id,
                "request_id": entry.request_id,
                "reason": entry.rejected_reason,
            },
        )
        for callback in self._rejection_listeners:
            await _call(callback, entry)

    async def poll(self, table: str, wait: float | None = None) -> int:
        """One long-poll round for a table."""
        body = await self.transport.fetch_changes(
            table,
            self.store.watermark(table),
            wait=self.long_poll_wait if wait is None else wait,
        )
        entries = [LogEntry.from_dict(e) for e in body.get("entries", [])]
        return await self.deliver(entries, check_gaps=False)

    async def run(self, table: str) -> None:
        """Keep a table in sync until cancelled."""
        attempt = 0
        force_snapshot = False
        while True:
            try:
                if force_snapshot or self.state(table).status != SyncStatus.READY:
                    await self.initialize(table, force_snapshot=force_snapshot)
                    force_snapshot = False
                await self.poll(table)
                attempt = 0
            except CursorExpiredError:
                force_snapshot = True
                await self._set_state(table, status=SyncStatus.INITIALIZING)
            except TransportError as e:
                attempt += 1
                self.state(table).error = str(e)
                logger.info(
                    "Live feed interrupted, retrying",
                    extra={"table": table, "attempt": attempt, "error": str(e)},
                )
                await asyncio.sleep(self.retry_delay(attempt))
            except RequestError as e:
                logger.error(
                    "Live feed stopped",
                    extra={"table": table, "status": e.status, "error": e.message},
                )
                await self._set_state(table, status=SyncStatus.ERROR, error=e.message)
                return
            except SnapshotTruncatedError as e:
                logger.error("Live feed stopped", extra={"table": table, "error": e.message})
                return

    def start(self, tables: Iterable[str]) -> None:
        for table in tables:
            task = self._tasks.get(table)
            if task is None or task.done():
                self._tasks[table] = asyncio.create_task(self.run(table))

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())
