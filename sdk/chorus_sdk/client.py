"""
SyncClient: the application-facing facade of the Chorus SDK.

Wires the replica store, harmonic consumer, offline write queue and HTTP
transport together:

    consumer.on_snapshot      -> queue.reapply_optimistic (pending writes stay visible)
    consumer.on_rejection     -> queue.handle_rejection_entry + rejection listeners
    queue.on_resync_needed    -> consumer.initialize(force_snapshot=True)

Example:
    >>> schema = ReplicaSchema(version="1", tables=(TableSchema("todos", indexes=("done",)),))
    >>> async with SyncClient(ClientSettings(user_id="7"), schema) as client:
    ...     entry = await client.submit("todos", "create", [{"title": "Milk", "user_id": "7"}])
    ...     client.read("todos", where={"done": False})

Invariants:
    - The schema is registered before open(); it cannot change while open
    - Reads are served from the local replica only
    - Writes always go through the offline queue
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

from .config import ClientSettings
from .consumer import HarmonicConsumer, SyncStatus, TableState
from .entries import LogEntry
from .errors import ChorusError, SchemaError, TransportError
from .queue import OfflineWriteQueue, QueueEntry
from .replica import ReplicaStore
from .schema import ReplicaSchema
from .transport import HttpTransport

logger = logging.getLogger(__name__)

SERVER_VERSION_KEY = "server_database_version"


class ConnectionState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Client listener failed")


class SyncClient:
    """Local-first client for one Chorus server."""

    def __init__(
        self,
        settings: ClientSettings | None = None,
        schema: ReplicaSchema | None = None,
        transport: HttpTransport | None = None,
        online: bool = True,
        live: bool = True,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Client settings (defaults load from the environment)
            schema: Replica schema; may also be given to register_schema()
            transport: Pre-built transport (tests inject one)
            online: Initial connectivity
            live: Run long-poll loops after the initial load
        """
        self.settings = settings or ClientSettings()
        self.transport = transport or HttpTransport(self.settings)
        self.live = live
        self._schema = schema
        self._online = online
        self.store: ReplicaStore | None = None
        self.queue: OfflineWriteQueue | None = None
        self.consumer: HarmonicConsumer | None = None
        self._rejection_listeners: list[Callable[[QueueEntry], Any]] = []
        self._entry_rejection_listeners: list[Callable[[LogEntry], Any]] = []
        self._schema_listeners: list[Callable[[dict[str, Any]], Any]] = []
        self._connection_listeners: list[Callable[[ConnectionState], Any]] = []

    async def __aenter__(self) -> SyncClient:
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @property
    def schema(self) -> ReplicaSchema | None:
        return self._schema

    @property
    def online(self) -> bool:
        return self._online

    @property
    def status(self) -> SyncStatus:
        return self.consumer.status if self.consumer else SyncStatus.IDLE

    def table_state(self, table: str) -> TableState:
        if self.consumer is None:
            return TableState()
        return self.consumer.state(table)

    def register_schema(self, schema: ReplicaSchema) -> None:
        """Declare the mirrored tables.

        Raises:
            SchemaError: If the client is already open
        """
        if self.store is not None:
            raise SchemaError("Schema must be registered before open()")
        self._schema = schema

    # Listeners

    def on_rejection(self, callback: Callable[[QueueEntry], Any]) -> None:
        """Queued write rejected (server rejection or exhausted_retries)."""
        self._rejection_listeners.append(callback)

    def on_rejected_entry(self, callback: Callable[[LogEntry], Any]) -> None:
        """Rejection entry received from the change feed."""
        self._entry_rejection_listeners.append(callback)

    def on_schema_change(self, callback: Callable[[dict[str, Any]], Any]) -> None:
        self._schema_listeners.append(callback)

    def on_connection_state(self, callback: Callable[[ConnectionState], Any]) -> None:
        self._connection_listeners.append(callback)

    # Lifecycle

    async def open(self) -> None:
        """Open the replica, restore the queue and connect if online.

        Raises:
            SchemaError: If no schema was registered or the rebuild failed
        """
        if self._schema is None:
            raise SchemaError("No replica schema registered")

        db_path = Path(self.settings.data_dir) / self.settings.db_name
        self.store = ReplicaStore(str(db_path), self._schema)
        self.queue = OfflineWriteQueue(self.store, self.transport, self.settings, online=self._online)
        self.consumer = HarmonicConsumer(
            self.store,
            self.transport,
            long_poll_wait=self.settings.long_poll_wait,
            chunk_size=self.settings.snapshot_chunk_size,
            retry_delay=self.settings.backoff_delay,
        )
        self.consumer.on_snapshot(self.queue.reapply_optimistic)
        self.consumer.on_rejection(self._handle_rejected_entry)
        self.queue.on_rejected(self._handle_rejected_write)
        self.queue.on_resync_needed(self._resync)

        rebuilt = await self.store.open()
        if rebuilt:
            await self.queue.on_rebuilt()
            await self._emit_schema_change(
                {"reason": "local", "schema_version": str(self._schema.version)}
            )
        await self.queue.start()

        if self._online:
            await self._connect()

    async def close(self) -> None:
        if self.consumer:
            await self.consumer.stop()
        if self.queue:
            await self.queue.stop()
        if self.store:
            self.store.close()
        await self.transport.close()

    async def _connect(self) -> None:
        """Check the server schema, cache capabilities and load every table."""
        assert self.store and self.queue and self.consumer
        tables = self._schema.table_names()
        try:
            server = await self.transport.fetch_schema()
            await self._check_server_schema(server)
            for table in tables:
                self.queue.set_capabilities(table, await self.transport.fetch_actions(table))
        except TransportError as e:
            logger.warning("Server unreachable during connect", extra={"error": str(e)})

        for table in tables:
            try:
                await self.consumer.initialize(table)
            except ChorusError as e:
                logger.warning(
                    "Initial load failed", extra={"table": table, "error": str(e)}
                )
        if self.live:
            self.consumer.start(tables)

    async def _check_server_schema(self, server: dict[str, Any]) -> None:
        missing = [t for t in self._schema.table_names() if t not in server.get("schema", {})]
        if missing:
            logger.warning("Registered tables not tracked by server", extra={"tables": missing})

        version = server.get("database_version")
        if not version:
            return
        previous = self.store.get_meta(SERVER_VERSION_KEY)
        self.store.set_meta(SERVER_VERSION_KEY, version)
        if previous is not None and previous != version:
            logger.warning(
                "Server schema changed, resnapshotting",
                extra={"previous": previous, "current": version},
            )
            for table in self._schema.table_names():
                await self.store.reset_table(table)
            await self._emit_schema_change(
                {
                    "reason": "server",
                    "previous": previous,
                    "database_version": version,
                    "schema_version": server.get("schema_version"),
                }
            )

    async def set_online(self, online: bool) -> None:
        """Report connectivity; drives the queue and the live feed."""
        if online == self._online:
            return
        self._online = online
        if self.queue:
            await self.queue.set_online(online)
        if self.consumer and self.store and self.store.is_open:
            if online:
                await self._connect()
            else:
                await self.consumer.stop()
        state = ConnectionState.ONLINE if online else ConnectionState.OFFLINE
        logger.info("Connection state changed", extra={"state": state.value})
        for callback in self._connection_listeners:
            await _call(callback, state)

    async def _resync(self, table: str) -> None:
        await self.consumer.initialize(table, force_snapshot=True)

    async def _handle_rejected_entry(self, entry: LogEntry) -> None:
        await self.queue.handle_rejection_entry(entry)
        for callback in self._entry_rejection_listeners:
            await _call(callback, entry)

    async def _handle_rejected_write(self, entry: QueueEntry) -> None:
        for callback in self._rejection_listeners:
            await _call(callback, entry)

    async def _emit_schema_change(self, info: dict[str, Any]) -> None:
        for callback in self._schema_listeners:
            await _call(callback, info)

    # Data

    def _require_open(self) -> ReplicaStore:
        if self.store is None:
            raise SchemaError("Client is not open")
        return self.store

    def read(
        self,
        table: str,
        where: dict[str, Any] | None = None,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
    ) -> list[dict[str, Any]]:
        """Current local rows of a table, optimistic writes included."""
        return self._require_open().read(table, where=where, predicate=predicate)

    def get(self, table: str, pk: str) -> dict[str, Any] | None:
        return self._require_open().get(table, pk)

    async def submit(
        self,
        table: str,
        action: str,
        items: list[dict[str, Any]],
        operation: str | None = None,
        wait: bool = False,
        timeout: float | None = None,
    ) -> QueueEntry:
        """Apply a write locally and queue it for the server.

        Args:
            table: Target table
            action: Registered action name
            items: Items to write
            operation: create, update or delete (inferred when omitted)
            wait: Wait for confirmation or rejection
            timeout: Seconds to wait when wait=True

        Raises:
            OfflineWriteNotAllowed: If offline and the action is not offline-capable
        """
        self._require_open()
        entry = await self.queue.submit(table, action, items, operation=operation)
        if wait:
            return await self.queue.wait_for(entry.request_id, timeout=timeout)
        return entry

    def pending_writes(self, table: str | None = None) -> list[QueueEntry]:
        return self.queue.pending(table) if self.queue else []
