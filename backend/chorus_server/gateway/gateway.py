"""
Write action gateway.

process_action() validates and executes a write request against its
registered action inside a single write transaction, which also holds the
harmonics of every successful item, a rejected harmonic for every rejected
item and the cached outcome keyed by client_request_id.

Batch modes:
    allow_partial=True   each item runs in its own savepoint; a rejected
                         item rolls back only itself
    allow_partial=False  all items share one savepoint; the first rejected
                         item rolls back the batch and every other item is
                         reported as batch_aborted

Invariants:
    - A client_request_id executes at most once per user; later submissions
      return the cached outcome (replayed=True)
    - Concurrent submissions of the same id in this process wait for the
      first one; across processes the cache lookup inside BEGIN IMMEDIATE
      gives the same guarantee
    - Unexpected handler exceptions roll back everything and are not cached,
      so the client may retry

How to change safely:
    - Keep the cache write in the same transaction as the mutations
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from ..capture.harmonic import Operation
from ..scope import Identity, ScopeResolver
from ..store.database import Database, Transaction
from ..store.records import RecordStore
from .actions import (
    ActionCapabilities,
    ActionContext,
    ActionResult,
    ItemOutcome,
    ItemRejected,
    ItemStatus,
    RejectionCode,
    RejectionReason,
    WriteAction,
)
from .registry import ActionRegistry

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Request-level error (the whole request is refused)."""

    pass


class InvalidRequestError(GatewayError):
    """Request is malformed or violates the action's capabilities."""

    pass


class RequestIdConflictError(GatewayError):
    """client_request_id was already used for a different action."""

    pass


class _BatchAborted(Exception):
    pass


def create_requests_schema(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS write_requests (
            user_id TEXT NOT NULL,
            client_request_id TEXT NOT NULL,
            table_name TEXT NOT NULL,
            action TEXT NOT NULL,
            result_json TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            PRIMARY KEY (user_id, client_request_id)
        );

        CREATE INDEX IF NOT EXISTS idx_write_requests_created
            ON write_requests(created_at);
    """)


class IdempotencyCache:
    """Terminal outcomes of write requests, keyed by (user, client_request_id)."""

    def __init__(self, db: Database) -> None:
        self.db = db
        db.add_schema(create_requests_schema)

    def lookup(
        self, conn: sqlite3.Connection, identity: Identity, request_id: str
    ) -> tuple[str, str, list[ItemOutcome]] | None:
        row = conn.execute(
            """
            SELECT table_name, action, result_json FROM write_requests
            WHERE user_id = ? AND client_request_id = ?
            """,
            (identity.user_id, request_id),
        ).fetchone()
        if row is None:
            return None
        outcomes = [ItemOutcome.from_dict(o) for o in json.loads(row["result_json"])]
        return row["table_name"], row["action"], outcomes

    async def get(
        self, identity: Identity, request_id: str
    ) -> tuple[str, str, list[ItemOutcome]] | None:
        with self.db.connect() as conn:
            return self.lookup(conn, identity, request_id)

    def store(
        self,
        txn: Transaction,
        identity: Identity,
        request_id: str,
        table: str,
        action: str,
        outcomes: Sequence[ItemOutcome],
    ) -> None:
        txn.execute(
            """
            INSERT INTO write_requests (user_id, client_request_id, table_name, action,
                                        result_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                identity.user_id,
                request_id,
                table,
                action,
                json.dumps([o.to_dict() for o in outcomes]),
                int(time.time() * 1000),
            ),
        )

    async def prune(self, older_than_ms: int) -> int:
        async with self.db.write_transaction() as txn:
            cursor = txn.execute(
                "DELETE FROM write_requests WHERE created_at < ?", (older_than_ms,)
            )
            return cursor.rowcount


class WriteGateway:
    """Executes write requests against registered actions.

    Example:
        >>> gateway = WriteGateway(records, registry, resolver)
        >>> result = await gateway.process_action(
        ...     Identity("7"), "todos", "create", "req-1", [{"title": "Buy milk"}]
        ... )
        >>> result.results[0].status
        <ItemStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        records: RecordStore,
        registry: ActionRegistry,
        resolver: ScopeResolver,
        cache: IdempotencyCache | None = None,
    ) -> None:
        self.records = records
        self.registry = registry
        self.resolver = resolver
        self.cache = cache or IdempotencyCache(records.db)
        self._request_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}
        self._processed = 0
        self._rejected_items = 0

    @asynccontextmanager
    async def _request_lock(self, key: tuple[str, str]) -> AsyncIterator[None]:
        lock = self._request_locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._request_locks[key]

    async def process_action(
        self,
        identity: Identity,
        table: str,
        action_name: str,
        client_request_id: str,
        items: Sequence[Any],
        operation: str | None = None,
    ) -> ActionResult:
        """Run a write request and return one outcome per item.

        Raises:
            ActionNotFoundError: If the action is not registered for the table
            InvalidRequestError: If the request violates the action's capabilities
            RequestIdConflictError: If the id was used for another action
        """
        registered = self.registry.get(table, action_name)
        capabilities = registered.capabilities

        if not client_request_id:
            raise InvalidRequestError("client_request_id is required")
        if not items:
            raise InvalidRequestError("items must not be empty")
        if len(items) > 1 and not capabilities.batch:
            raise InvalidRequestError(f"Action '{action_name}' accepts a single item per request")
        op = self._operation_for(capabilities, operation)

        async with self._request_lock((identity.user_id, client_request_id)):
            replay = await self._replay(identity, table, action_name, client_request_id)
            if replay is not None:
                return replay

            async with self.records.writer(request_id=client_request_id) as writer:
                txn = writer.txn
                cached = self.cache.lookup(txn.conn, identity, client_request_id)
                if cached is not None:
                    return self._replayed(cached, table, action_name, client_request_id)

                ctx = ActionContext(
                    identity=identity,
                    table=table,
                    action=action_name,
                    client_request_id=client_request_id,
                    writer=writer,
                    scopes=frozenset(self.resolver.scopes_for(identity)),
                    resolver=self.resolver,
                )
                pk = writer.capture.entity(table).primary_key

                if capabilities.allow_partial:
                    outcomes = [
                        await self._run_item(ctx, registered.handler, item, index, pk)
                        for index, item in enumerate(items)
                    ]
                else:
                    outcomes = await self._run_all_or_nothing(ctx, registered.handler, items, pk)

                for item, outcome in zip(items, outcomes):
                    if outcome.status == ItemStatus.REJECTED and outcome.reason is not None:
                        writer.capture.capture_rejection(
                            txn,
                            table,
                            op,
                            record_id=outcome.item_id,
                            identity=identity,
                            reason=outcome.reason.describe(),
                            request_id=client_request_id,
                            payload=item if isinstance(item, dict) else None,
                        )

                self.cache.store(txn, identity, client_request_id, table, action_name, outcomes)

        rejected = sum(1 for o in outcomes if o.status == ItemStatus.REJECTED)
        self._processed += 1
        self._rejected_items += rejected
        logger.info(
            "Processed write request",
            extra={
                "table": table,
                "action": action_name,
                "client_request_id": client_request_id,
                "items": len(outcomes),
                "rejected": rejected,
            },
        )
        return ActionResult(client_request_id=client_request_id, results=outcomes)

    async def _replay(
        self, identity: Identity, table: str, action: str, request_id: str
    ) -> ActionResult | None:
        cached = await self.cache.get(identity, request_id)
        if cached is None:
            return None
        return self._replayed(cached, table, action, request_id)

    def _replayed(
        self,
        cached: tuple[str, str, list[ItemOutcome]],
        table: str,
        action: str,
        request_id: str,
    ) -> ActionResult:
        cached_table, cached_action, outcomes = cached
        if (cached_table, cached_action) != (table, action):
            raise RequestIdConflictError(
                f"client_request_id {request_id} was used for {cached_table}/{cached_action}"
            )
        logger.debug("Replaying cached outcome", extra={"client_request_id": request_id})
        return ActionResult(client_request_id=request_id, results=outcomes, replayed=True)

    def _operation_for(self, capabilities: ActionCapabilities, requested: str | None) -> Operation:
        if requested is None:
            return sorted(capabilities.operations, key=lambda o: o.value)[0]
        try:
            op = Operation(requested)
        except ValueError:
            raise InvalidRequestError(f"Unknown operation: {requested}") from None
        if op not in capabilities.operations:
            raise InvalidRequestError(f"Operation '{op.value}' is not supported by this action")
        return op

    @staticmethod
    def _item_id(item: Any, index: int, pk: str) -> str:
        if isinstance(item, dict) and item.get(pk) not in (None, ""):
            return str(item[pk])
        return str(index)

    @staticmethod
    def _success(item: Any, index: int, pk: str, data: dict[str, Any] | None) -> ItemOutcome:
        item_id = WriteGateway._item_id(item, index, pk)
        if isinstance(data, dict) and not (isinstance(item, dict) and item.get(pk)):
            item_id = str(data.get(pk, item_id))
        return ItemOutcome.success(item_id, data)

    async def _run_item(
        self, ctx: ActionContext, handler: WriteAction, item: Any, index: int, pk: str
    ) -> ItemOutcome:
        try:
            with ctx.writer.txn.savepoint():
                validated = handler.validate(item)
                data = await handler.handle(ctx, validated)
        except ItemRejected as e:
            item_id = self._item_id(item, index, pk)
            logger.warning(
                "Write item rejected",
                extra={"table": ctx.table, "item_id": item_id, "code": e.code.value},
            )
            return ItemOutcome.rejected(item_id, e.reason())
        return self._success(item, index, pk, data)

    async def _run_all_or_nothing(
        self, ctx: ActionContext, handler: WriteAction, items: Sequence[Any], pk: str
    ) -> list[ItemOutcome]:
        outcomes: list[ItemOutcome] = []
        failed_index = -1
        failure: RejectionReason | None = None

        try:
            with ctx.writer.txn.savepoint():
                for index, item in enumerate(items):
                    try:
                        validated = handler.validate(item)
                        data = await handler.handle(ctx, validated)
                    except ItemRejected as e:
                        failed_index, failure = index, e.reason()
                        raise _BatchAborted() from e
                    outcomes.append(self._success(item, index, pk, data))
        except _BatchAborted:
            failed_id = self._item_id(items[failed_index], failed_index, pk)
            logger.warning(
                "Write batch aborted",
                extra={
                    "table": ctx.table,
                    "item_id": failed_id,
                    "code": failure.code.value if failure else None,
                },
            )
            aborted = RejectionReason(
                code=RejectionCode.BATCH_ABORTED,
                message="Batch rolled back because another item was rejected",
                details={"failed_item": failed_id},
            )
            return [
                ItemOutcome.rejected(
                    self._item_id(item, index, pk),
                    failure if index == failed_index and failure else aborted,
                )
                for index, item in enumerate(items)
            ]
        return outcomes

    @property
    def stats(self) -> dict[str, int]:
        return {"processed": self._processed, "rejected_items": self._rejected_items}
