"""
Wiring of the server components.

build_services() constructs every component from a ServerConfig without
doing I/O. The deployment then tracks its tables and registers its actions,
and start() initializes storage, connects the broker and freezes the
registry. The HTTP app and the Server entry point both consume the
resulting ChorusServices.

Invariants:
    - Entities and actions are registered before start()
    - The dispatcher is woken by every committed harmonic
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any

from .broadcast import BroadcastDispatcher, Broker, create_broker
from .capture import ChangeCapture, HarmonicLog
from .config import ServerConfig
from .gateway import ActionRegistry, WriteGateway
from .scope import ScopeResolver, TenantLookup, create_scope_resolver
from .store.database import Database
from .store.records import RecordStore
from .sync import SnapshotService

logger = logging.getLogger(__name__)


def schema_fingerprint(schema: dict[str, Any]) -> str:
    """Stable hash of the advertised table schema."""
    canonical = json.dumps(schema, sort_keys=True, separators=(",", ":"))
    return f"sha256:{hashlib.sha256(canonical.encode()).hexdigest()}"


@dataclass
class ChorusServices:
    """All server components sharing one database and broker."""

    config: ServerConfig
    db: Database
    log: HarmonicLog
    resolver: ScopeResolver
    capture: ChangeCapture
    records: RecordStore
    broker: Broker
    dispatcher: BroadcastDispatcher
    snapshots: SnapshotService
    registry: ActionRegistry
    gateway: WriteGateway

    async def start(self) -> None:
        await self.db.initialize()
        if not self.broker.is_connected:
            await self.broker.connect()
        if not self.registry.frozen:
            self.registry.freeze()
        logger.info(
            "Services started",
            extra={"tables": self.capture.tables(), "actions": len(self.registry)},
        )

    async def close(self) -> None:
        await self.dispatcher.stop()
        await self.broker.close()

    def schema(self) -> dict[str, Any]:
        tables = self.capture.schema()
        return {
            "schema": tables,
            "schema_version": self.config.sync.schema_version,
            "database_version": schema_fingerprint(tables),
        }

    async def health(self) -> dict[str, Any]:
        log_stats = await self.log.stats()
        return {
            "healthy": self.broker.is_connected,
            "broker_connected": self.broker.is_connected,
            "dispatcher": self.dispatcher.stats,
            "gateway": self.gateway.stats,
            **log_stats,
        }


def build_services(
    config: ServerConfig,
    broker: Broker | None = None,
    tenant_lookup: TenantLookup | None = None,
) -> ChorusServices:
    """Construct the component graph.

    Args:
        config: Server configuration
        broker: Broker override (defaults to the configured backend)
        tenant_lookup: Read-only tenant derivation for the tenant strategy

    Returns:
        ChorusServices, not yet started
    """
    db = Database(
        config.storage.db_path,
        wal_mode=config.storage.wal_mode,
        busy_timeout_ms=config.storage.busy_timeout_ms,
    )
    resolver = create_scope_resolver(config.scope, tenant_lookup=tenant_lookup)
    log = HarmonicLog(db)
    capture = ChangeCapture(log, resolver)
    records = RecordStore(db, capture)
    broker = broker or create_broker(config)

    dispatcher = BroadcastDispatcher(log, broker, config.broadcast)
    log.add_listener(dispatcher.notify)

    snapshots = SnapshotService(
        records,
        capture,
        resolver,
        config.sync,
        broker=broker,
        namespace=config.broadcast.namespace,
    )
    registry = ActionRegistry(capture)
    gateway = WriteGateway(records, registry, resolver)

    return ChorusServices(
        config=config,
        db=db,
        log=log,
        resolver=resolver,
        capture=capture,
        records=records,
        broker=broker,
        dispatcher=dispatcher,
        snapshots=snapshots,
        registry=registry,
        gateway=gateway,
    )
