"""
Error types for the Chorus SDK.

This module defines all exception types raised by the SDK:
- ChorusError: Base exception
- TransportError: Transient network failure (retried by the offline queue)
- RequestError: Terminal HTTP error (4xx other than 408/429)
- CursorExpiredError: Catch-up cursor older than the server's retained log
- SnapshotTruncatedError: Server capped a snapshot below the table size
- SchemaError: Schema/version problems
- OfflineWriteNotAllowed: Action cannot be queued while offline
- ReplicaNotInitializedError: Replica used before open()
- UnknownTableError: Table not registered in the replica schema

Invariants:
    - All errors inherit from ChorusError
    - TransportError is the only retryable error
    - Errors include context for debugging
"""

from __future__ import annotations

from typing import Any


class ChorusError(Exception):
    """Base exception for all Chorus SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CHORUS_ERROR"
        self.details = details or {}


class TransportError(ChorusError):
    """Request could not complete; safe to retry.

    Raised when:
    - Server is unreachable
    - Request times out
    - Server answers 5xx, 408 or 429
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSPORT_ERROR",
            details={"status": status, "url": url},
        )
        self.status = status
        self.url = url


class RequestError(ChorusError):
    """Server refused the request; retrying will not help."""

    def __init__(
        self,
        message: str,
        status: int,
        error_code: str | None = None,
        body: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=error_code or "REQUEST_ERROR",
            details={"status": status, "body": body or {}},
        )
        self.status = status
        self.body = body or {}


class CursorExpiredError(RequestError):
    """Catch-up cursor predates the server's retained log."""

    def __init__(self, message: str, body: dict[str, Any] | None = None) -> None:
        super().__init__(message, status=410, error_code="CURSOR_EXPIRED", body=body)


class SnapshotTruncatedError(ChorusError):
    """Server returned only part of a table's rows.

    The replica keeps its previous rows and watermark; applying the partial
    set would drop the missing rows and skip their entries.
    """

    def __init__(self, table: str, rows: int) -> None:
        super().__init__(
            f"Snapshot of '{table}' was truncated at {rows} rows",
            code="SNAPSHOT_TRUNCATED",
            details={"table": table, "rows": rows},
        )
        self.table = table
        self.rows = rows


class SchemaError(ChorusError):
    """Schema-related error.

    Raised when:
    - Local schema declaration is invalid
    - Rebuild after a version change failed
    """

    def __init__(
        self,
        message: str,
        expected_version: str | None = None,
        actual_version: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="SCHEMA_ERROR",
            details={
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class OfflineWriteNotAllowed(ChorusError):
    """Write attempted offline for an action that is not offline-capable."""

    def __init__(self, table: str, action: str) -> None:
        super().__init__(
            f"Action '{action}' on '{table}' cannot be queued while offline",
            code="OFFLINE_NOT_ALLOWED",
            details={"table": table, "action": action},
        )
        self.table = table
        self.action = action


class ReplicaNotInitializedError(ChorusError):
    """Replica store used before open()."""

    def __init__(self) -> None:
        super().__init__("Replica store is not open", code="NOT_INITIALIZED")


class UnknownTableError(ChorusError):
    """Table is not part of the registered replica schema."""

    def __init__(self, table: str) -> None:
        super().__init__(
            f"Table '{table}' is not registered",
            code="UNKNOWN_TABLE",
            details={"table": table},
        )
        self.table = table
