"""
Change capture for tracked entities.

ChangeCapture turns a committed record mutation into exactly one harmonic.
It projects the record onto the entity's declared sync fields, asks the
scope resolver for the routing key and appends the entry to the log inside
the caller's write transaction.

Invariants:
    - Capture happens in the same transaction as the mutation, so a
      harmonic exists if and only if the mutation committed
    - The primary key is always part of the payload
    - Deletes carry no payload
    - A table can be tracked once

How to change safely:
    - Adding a sync field changes payload shape for every client; bump the
      advertised schema version when removing one
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..scope import Identity, ScopeResolver
from ..store.database import Transaction
from .harmonic import Harmonic, Operation
from .log import HarmonicLog

logger = logging.getLogger(__name__)


class CaptureError(Exception):
    """Base exception for change capture."""

    pass


class UntrackedTableError(CaptureError):
    """Table is not registered for change capture."""

    def __init__(self, table: str) -> None:
        super().__init__(f"Table is not tracked: {table}")
        self.table = table


class DuplicateTrackingError(CaptureError):
    """Table is already tracked."""

    pass


SyncFilter = Callable[[Mapping[str, Any], Identity], bool]


@dataclass(frozen=True)
class TrackedEntity:
    """Declaration of a synced table.

    Attributes:
        table: Table name
        primary_key: Primary key field
        sync_fields: Fields included in payloads (empty means every field)
        indexes: Fields clients should index locally
        sync_filter: Optional predicate restricting rows served to a caller.
            It is called with the projected row, so it can only test the
            primary key and sync fields.
    """

    table: str
    primary_key: str = "id"
    sync_fields: tuple[str, ...] = ()
    indexes: tuple[str, ...] = ()
    sync_filter: SyncFilter | None = field(default=None, compare=False)

    def project(self, record: Mapping[str, Any]) -> dict[str, Any]:
        """Limit a record to the declared sync fields."""
        if not self.sync_fields:
            return dict(record)
        projected = {self.primary_key: record.get(self.primary_key)}
        for name in self.sync_fields:
            if name in record:
                projected[name] = record[name]
        return projected

    def visible_to(self, record: Mapping[str, Any], identity: Identity) -> bool:
        if self.sync_filter is None:
            return True
        return bool(self.sync_filter(record, identity))

    def schema(self) -> dict[str, Any]:
        return {"primary_key": self.primary_key, "indexes": list(self.indexes)}


class ChangeCapture:
    """Registry of tracked entities and the capture entry point.

    Example:
        >>> capture = ChangeCapture(log, resolver)
        >>> capture.track(TrackedEntity("todos", sync_fields=("title", "done")))
        >>> async with db.write_transaction() as txn:
        ...     capture.capture(txn, "todos", Operation.CREATE, row)
    """

    def __init__(self, log: HarmonicLog, resolver: ScopeResolver) -> None:
        self.log = log
        self.resolver = resolver
        self._entities: dict[str, TrackedEntity] = {}

    def track(self, entity: TrackedEntity) -> None:
        if entity.table in self._entities:
            raise DuplicateTrackingError(f"Table already tracked: {entity.table}")
        self._entities[entity.table] = entity
        logger.debug(f"Tracking table {entity.table}", extra={"table": entity.table})

    def entity(self, table: str) -> TrackedEntity:
        try:
            return self._entities[table]
        except KeyError:
            raise UntrackedTableError(table) from None

    def is_tracked(self, table: str) -> bool:
        return table in self._entities

    def tables(self) -> list[str]:
        return sorted(self._entities)

    def schema(self) -> dict[str, dict[str, Any]]:
        return {name: self._entities[name].schema() for name in self.tables()}

    def capture(
        self,
        txn: Transaction,
        table: str,
        operation: Operation,
        record: Mapping[str, Any],
        mutation_id: str | None = None,
        request_id: str | None = None,
    ) -> Harmonic:
        """Append the harmonic for a mutation in the open transaction.

        Args:
            txn: Transaction performing the mutation
            table: Tracked table
            operation: Mutation kind
            record: Full record state (pre-image for deletes)
            mutation_id: Dedup key when the write may be retried
            request_id: Originating client_request_id

        Returns:
            The appended (or previously appended) harmonic
        """
        entity = self.entity(table)
        record_id = str(record[entity.primary_key])
        payload = None if operation == Operation.DELETE else entity.project(record)

        return self.log.append(
            txn,
            table=table,
            record_id=record_id,
            operation=operation,
            payload=payload,
            scope_key=self.resolver.resolve(record),
            mutation_id=mutation_id,
            request_id=request_id,
        )

    def capture_rejection(
        self,
        txn: Transaction,
        table: str,
        operation: Operation,
        record_id: str,
        identity: Identity,
        reason: str,
        request_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Harmonic:
        """Append a rejected harmonic addressed to the submitting identity."""
        return self.log.append(
            txn,
            table=table,
            record_id=record_id,
            operation=operation,
            payload=payload,
            scope_key=self.resolver.personal_scope(identity),
            request_id=request_id,
            rejected=True,
            rejected_reason=reason,
        )
