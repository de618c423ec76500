"""
Chorus Python SDK - local-first client for Chorus Server.

The SDK keeps a queryable SQLite mirror of server tables, applies the
server's change log to it, and queues writes (online or offline) with
optimistic local application and rollback on rejection:
- ReplicaSchema / TableSchema for declaring mirrored tables
- SyncClient facade (read, submit, connectivity, notifications)
- ReplicaStore, HarmonicConsumer, OfflineWriteQueue building blocks
- HttpTransport for the server's JSON API

Example:
    >>> from sdk.chorus_sdk import ClientSettings, ReplicaSchema, SyncClient, TableSchema
    >>>
    >>> schema = ReplicaSchema(version="1", tables=(TableSchema("todos", indexes=("done",)),))
    >>> async with SyncClient(ClientSettings(user_id="7"), schema) as client:
    ...     await client.submit("todos", "create", [{"title": "Milk", "user_id": "7"}])
    ...     todos = client.read("todos", where={"done": False})

Invariants:
    - Log entries are applied at most once per table (watermark)
    - Writes to one table replay in submission order
    - Rejected optimistic writes restore the exact prior row state

Version: 0.4.0
"""

__version__ = "0.4.0"

from .client import ConnectionState, SyncClient
from .config import ClientSettings
from .consumer import HarmonicConsumer, SyncStatus, TableState
from .entries import LogEntry, Operation
from .errors import (
    ChorusError,
    CursorExpiredError,
    OfflineWriteNotAllowed,
    ReplicaNotInitializedError,
    RequestError,
    SchemaError,
    SnapshotTruncatedError,
    TransportError,
    UnknownTableError,
)
from .queue import EXHAUSTED_RETRIES, OfflineWriteQueue, QueueEntry, QueueStatus
from .replica import ReplicaStore, RowImage
from .schema import ReplicaSchema, TableSchema
from .transport import HttpTransport

__all__ = [
    # Version
    "__version__",
    # Schema
    "ReplicaSchema",
    "TableSchema",
    # Client
    "SyncClient",
    "ClientSettings",
    "ConnectionState",
    # Building blocks
    "ReplicaStore",
    "RowImage",
    "HarmonicConsumer",
    "SyncStatus",
    "TableState",
    "OfflineWriteQueue",
    "QueueEntry",
    "QueueStatus",
    "EXHAUSTED_RETRIES",
    "HttpTransport",
    # Wire types
    "LogEntry",
    "Operation",
    # Errors
    "ChorusError",
    "TransportError",
    "RequestError",
    "CursorExpiredError",
    "SnapshotTruncatedError",
    "SchemaError",
    "OfflineWriteNotAllowed",
    "ReplicaNotInitializedError",
    "UnknownTableError",
]
