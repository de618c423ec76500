"""
Harmonic (log entry) model and id generation.

A harmonic is one immutable record of an authoritative mutation. Ids are
fixed-width strings so that lexicographic order equals creation order:

    <13-digit unix ms><6-digit sequence>

Invariants:
    - Ids are strictly increasing across every table (one global cursor)
    - payload is None only for deletes
    - Rejected harmonics never describe a committed mutation

How to change safely:
    - Changing the id width breaks string comparison against stored ids
    - New wire fields must be optional in from_dict()
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

ID_MS_WIDTH = 13
ID_SEQ_WIDTH = 6
_MAX_SEQ = 10**ID_SEQ_WIDTH - 1


class Operation(str, Enum):
    """Mutation kinds recorded in the log."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def format_harmonic_id(ms: int, seq: int) -> str:
    return f"{ms:0{ID_MS_WIDTH}d}{seq:0{ID_SEQ_WIDTH}d}"


def next_harmonic_id(last_id: str | None, now_ms: int | None = None) -> str:
    """Return the next id after last_id.

    Uses the wall clock when it has moved past the last id, otherwise bumps
    the sequence so ids stay monotonic under clock skew or bursts.

    Args:
        last_id: Highest id currently in the log (None for an empty log)
        now_ms: Override for the current time (testing)

    Returns:
        New sortable id
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)

    if not last_id:
        return format_harmonic_id(now_ms, 0)

    last_ms = int(last_id[:ID_MS_WIDTH])
    last_seq = int(last_id[ID_MS_WIDTH:])

    if now_ms > last_ms:
        return format_harmonic_id(now_ms, 0)
    if last_seq >= _MAX_SEQ:
        return format_harmonic_id(last_ms + 1, 0)
    return format_harmonic_id(last_ms, last_seq + 1)


@dataclass(frozen=True)
class Harmonic:
    """One entry of the change log.

    Attributes:
        id: Sortable unique identifier
        table: Tracked table name
        record_id: Primary key of the mutated record
        operation: create, update or delete
        payload: Synced fields of the record (None for delete)
        scope_key: Routing key computed at capture time
        created_at: Creation timestamp (Unix ms)
        processed_at: Broadcast marker (Unix ms), set once
        mutation_id: Identifier of the physical mutation (dedup key)
        rejected: Whether this entry reports a rejected write
        rejected_reason: Reason attached to a rejected entry
        request_id: client_request_id of the write that produced this entry
    """

    id: str
    table: str
    record_id: str
    operation: Operation
    payload: dict[str, Any] | None
    scope_key: str
    created_at: int
    processed_at: int | None = None
    mutation_id: str | None = None
    rejected: bool = False
    rejected_reason: str | None = None
    request_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_wire(self, previous_id: str | None = None) -> dict[str, Any]:
        """Serialize for broadcast and incremental fetch responses."""
        data: dict[str, Any] = {
            "id": self.id,
            "table": self.table,
            "record_id": self.record_id,
            "operation": self.operation.value,
            "payload": self.payload,
            "created_at": self.created_at,
        }
        if previous_id is not None:
            data["previous_id"] = previous_id
        if self.rejected:
            data["rejected"] = True
            data["rejected_reason"] = self.rejected_reason
        if self.request_id:
            data["request_id"] = self.request_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Harmonic:
        """Create from a dictionary representation.

        Raises:
            ValueError: If required fields are missing
        """
        required = ["id", "table", "record_id", "operation"]
        missing = [f for f in required if f not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")

        return cls(
            id=data["id"],
            table=data["table"],
            record_id=str(data["record_id"]),
            operation=Operation(data["operation"]),
            payload=data.get("payload"),
            scope_key=data.get("scope_key", ""),
            created_at=data.get("created_at", int(time.time() * 1000)),
            processed_at=data.get("processed_at"),
            mutation_id=data.get("mutation_id"),
            rejected=bool(data.get("rejected", False)),
            rejected_reason=data.get("rejected_reason"),
            request_id=data.get("request_id"),
        )
