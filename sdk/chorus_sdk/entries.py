"""
Wire types received from Chorus Server.

LogEntry mirrors the server's harmonic as delivered by the change feed.
Ids are fixed-width strings; comparing them as strings compares their
position in the global log.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class LogEntry:
    """One change delivered by the server.

    Attributes:
        id: Sortable unique id
        table: Table name
        record_id: Primary key of the record
        operation: create, update or delete
        payload: Synced fields (None for delete)
        created_at: Server timestamp (Unix ms)
        previous_id: Preceding id on the same channel, if known
        rejected: Whether this reports a rejected write
        rejected_reason: Reason for the rejection
        request_id: client_request_id of the originating write
    """

    id: str
    table: str
    record_id: str
    operation: Operation
    payload: dict[str, Any] | None = None
    created_at: int | None = None
    previous_id: str | None = None
    rejected: bool = False
    rejected_reason: str | None = None
    request_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        """Parse a serialized entry.

        Raises:
            ValueError: If required fields are missing
        """
        missing = [k for k in ("id", "table", "record_id", "operation") if k not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")
        return cls(
            id=str(data["id"]),
            table=data["table"],
            record_id=str(data["record_id"]),
            operation=Operation(data["operation"]),
            payload=data.get("payload"),
            created_at=data.get("created_at"),
            previous_id=data.get("previous_id"),
            rejected=bool(data.get("rejected", False)),
            rejected_reason=data.get("rejected_reason"),
            request_id=data.get("request_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "table": self.table,
            "record_id": self.record_id,
            "operation": self.operation.value,
            "payload": self.payload,
            "created_at": self.created_at,
        }
        if self.previous_id is not None:
            data["previous_id"] = self.previous_id
        if self.rejected:
            data["rejected"] = True
            data["rejected_reason"] = self.rejected_reason
        if self.request_id:
            data["request_id"] = self.request_id
        return data
