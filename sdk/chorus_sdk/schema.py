"""
Replica schema declarations for the Chorus SDK.

The application declares, once at start-up, which tables it mirrors, their
primary key and the fields to index locally, together with a schema
version. The replica store compares the version and the fingerprint of the
declaration with what it persisted last time; any difference triggers a
full rebuild followed by fresh snapshots.

Invariants:
    - Table names are unique within a schema
    - The fingerprint depends only on the declaration, not on order of
      declaration
    - Index fields are plain names usable as JSON paths

Example:
    >>> schema = ReplicaSchema(
    ...     version="3",
    ...     tables=(
    ...         TableSchema("todos", indexes=("user_id", "done")),
    ...         TableSchema("projects", primary_key="slug"),
    ...     ),
    ... )
    >>> schema.table("todos").primary_key
    'id'
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from .errors import SchemaError, UnknownTableError

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class TableSchema:
    """Local declaration of one mirrored table.

    Attributes:
        name: Table name (as tracked on the server)
        primary_key: Field holding the record id
        indexes: Fields to index for predicate scans
    """

    name: str
    primary_key: str = "id"
    indexes: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            raise SchemaError("Table name must not be empty")
        for field_name in (self.primary_key, *self.indexes):
            if not _FIELD_NAME.match(field_name):
                raise SchemaError(f"Invalid field name '{field_name}' in table '{self.name}'")

    def to_dict(self) -> dict[str, Any]:
        return {"primary_key": self.primary_key, "indexes": sorted(self.indexes)}

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> TableSchema:
        return cls(
            name=name,
            primary_key=data.get("primary_key", "id"),
            indexes=tuple(data.get("indexes", ())),
        )


@dataclass(frozen=True)
class ReplicaSchema:
    """Versioned set of mirrored tables."""

    version: str
    tables: tuple[TableSchema, ...] = ()

    def __post_init__(self) -> None:
        names = [t.name for t in self.tables]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise SchemaError(f"Duplicate table declarations: {duplicates}")

    @property
    def fingerprint(self) -> str:
        """sha256 of the canonical declaration, including the version."""
        canonical = json.dumps(
            {"version": str(self.version), "tables": {t.name: t.to_dict() for t in self.tables}},
            sort_keys=True,
            separators=(",", ":"),
        )
        return f"sha256:{hashlib.sha256(canonical.encode()).hexdigest()}"

    def table(self, name: str) -> TableSchema:
        for table in self.tables:
            if table.name == name:
                return table
        raise UnknownTableError(name)

    def has_table(self, name: str) -> bool:
        return any(t.name == name for t in self.tables)

    def table_names(self) -> list:
        return [t.name for t in self.tables]

    def __iter__(self) -> Iterator[TableSchema]:
        return iter(self.tables)

    @classmethod
    def from_server(cls, payload: dict[str, Any]) -> ReplicaSchema:
        """Build from the server's GET /api/schema response."""
        tables = payload.get("schema", {})
        return cls(
            version=str(payload.get("schema_version", "1")),
            tables=tuple(TableSchema.from_dict(name, declared) for name, declared in sorted(tables.items())),
        )
