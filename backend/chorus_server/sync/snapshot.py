"""
Snapshot and catch-up reads for clients.

SnapshotService answers the three read paths of the sync protocol:

    snapshot(table, identity)             current rows + cursor
    changes(table, identity, after)       entries with id > after
    wait_for_changes(..., wait)           long-poll on the live channels

The snapshot reads rows and the cursor in one read transaction. Because
harmonic ids are assigned under the write lock, commit order equals id
order, so every entry with id <= cursor is reflected in the rows and none
with id > cursor is.

Invariants:
    - Snapshots and change feeds only include rows/entries whose scope key
      the identity is authorized for
    - Change entries are returned in ascending id order; entries whose row
      fails the sync filter are served as deletes
    - The sync filter sees the projected row on both paths, so a snapshot
      and the change feed agree on which rows a caller holds
    - Long-poll subscribes before querying so no entry slips between them

How to change safely:
    - Do not split the snapshot into several read transactions
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from ..broadcast.base import Broker, channel_name
from ..capture.harmonic import Harmonic, Operation
from ..capture.log import HarmonicLog
from ..capture.tracker import ChangeCapture
from ..config import SyncConfig
from ..scope import Identity, ScopeResolver
from ..store.records import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """Point-in-time rows of a table.

    Attributes:
        table: Table name
        rows: Projected rows visible to the caller
        cursor: Highest harmonic id reflected in rows (None for an empty log)
        truncated: Whether the row limit cut the result
    """

    table: str
    rows: list[dict[str, Any]]
    cursor: str | None
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "rows": self.rows,
            "cursor": self.cursor,
            "truncated": self.truncated,
        }


@dataclass
class ChangeSet:
    """Incremental entries of a table after a cursor."""

    table: str
    entries: list[Harmonic] = field(default_factory=list)
    cursor: str | None = None
    has_more: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "entries": [e.to_wire() for e in self.entries],
            "cursor": self.cursor,
            "has_more": self.has_more,
        }


class SnapshotService:
    """Read side of the sync protocol."""

    def __init__(
        self,
        records: RecordStore,
        capture: ChangeCapture,
        resolver: ScopeResolver,
        config: SyncConfig,
        broker: Broker | None = None,
        namespace: str = "chorus",
    ) -> None:
        self.records = records
        self.capture = capture
        self.log: HarmonicLog = capture.log
        self.resolver = resolver
        self.config = config
        self.broker = broker
        self.namespace = namespace

    def _visible(self, table: str, rows: list[dict[str, Any]], identity: Identity) -> list[dict[str, Any]]:
        entity = self.capture.entity(table)
        projected = (entity.project(r) for r in rows)
        return [r for r in projected if entity.visible_to(r, identity)]

    async def snapshot(self, table: str, identity: Identity) -> Snapshot:
        """Current rows of a table for the caller, plus the cursor.

        Raises:
            UntrackedTableError: If the table is not tracked
        """
        self.capture.entity(table)
        scopes = self.resolver.scopes_for(identity)
        limit = self.config.snapshot_limit

        with self.records.db.read_transaction() as conn:
            # Ids up to the prune boundary are reflected in the rows even when
            # none of this table's entries remain.
            marks = (self.log.latest_id(conn, table), self.log.pruned_through(conn))
            cursor = max((m for m in marks if m), default=None)
            rows = self.records.rows_in(conn, table, scopes, limit=limit + 1)

        truncated = len(rows) > limit
        if truncated:
            logger.warning(
                "Snapshot truncated at row limit",
                extra={"table": table, "limit": limit, "user_id": identity.user_id},
            )
            rows = rows[:limit]

        visible = self._visible(table, rows, identity)
        logger.debug(
            "Served snapshot",
            extra={"table": table, "rows": len(visible), "cursor": cursor},
        )
        return Snapshot(table=table, rows=visible, cursor=cursor, truncated=truncated)

    async def changes(
        self,
        table: str,
        identity: Identity,
        after: str | None,
        limit: int | None = None,
    ) -> ChangeSet:
        """Entries of a table with id > after, visible to the caller.

        Raises:
            UntrackedTableError: If the table is not tracked
            CursorExpiredError: If after predates the retained log
        """
        entity = self.capture.entity(table)
        page = min(limit or self.config.changes_page_size, self.config.changes_page_size)
        scopes = self.resolver.scopes_for(identity)

        entries = await self.log.entries_after(table, after, scopes, limit=page + 1)
        has_more = len(entries) > page
        entries = entries[:page]

        # Rows that stop matching the sync filter are delivered as deletes.
        visible = [
            e
            if e.rejected or e.payload is None or entity.visible_to(e.payload, identity)
            else replace(e, operation=Operation.DELETE, payload=None)
            for e in entries
        ]
        cursor = entries[-1].id if entries else after
        return ChangeSet(table=table, entries=visible, cursor=cursor, has_more=has_more)

    def channels_for(self, table: str, identity: Identity) -> list[str]:
        return [channel_name(self.namespace, s, table) for s in self.resolver.scopes_for(identity)]

    async def wait_for_changes(
        self,
        table: str,
        identity: Identity,
        after: str | None,
        wait: float,
        limit: int | None = None,
    ) -> ChangeSet:
        """Long-poll variant of changes().

        Returns immediately when entries exist; otherwise waits up to wait
        seconds for a broadcast on the caller's channels, then re-reads
        the log so the response keeps id order.
        """
        wait = max(0.0, min(wait, self.config.max_wait_seconds))
        if wait == 0 or self.broker is None:
            return await self.changes(table, identity, after, limit)

        subscription = self.broker.subscribe(self.channels_for(table, identity))
        try:
            result = await self.changes(table, identity, after, limit)
            if result.entries:
                return result

            loop = asyncio.get_running_loop()
            deadline = loop.time() + wait
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return result
                message = await subscription.get(timeout=remaining)
                if message is None:
                    return result
                result = await self.changes(table, identity, after, limit)
                if result.entries:
                    return result
        finally:
            subscription.close()
