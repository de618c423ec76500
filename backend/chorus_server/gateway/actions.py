"""
Write actions: handler base class, capabilities and per-item outcomes.

A write action validates one item at a time and performs its mutation
through the RecordWriter in the action context. Business rules reject an
item by raising an ItemRejected subclass; the gateway turns that into a
structured per-item rejection.

Invariants:
    - Handlers mutate records only through ctx.writer, so every change is
      captured in the request's transaction
    - ItemRejected is the only exception that maps to a per-item rejection;
      anything else aborts the whole request

How to change safely:
    - New rejection codes must be understood by clients (they surface the
      code to users); add, never rename
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from ..capture.harmonic import Operation
from ..scope import Identity, ScopeResolver
from ..store.records import RecordExistsError, RecordWriter


class RejectionCode(str, Enum):
    """Structured rejection categories."""

    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    BATCH_ABORTED = "batch_aborted"


class ItemRejected(Exception):
    """Base exception for a rejected write item."""

    code = RejectionCode.VALIDATION_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def reason(self) -> RejectionReason:
        return RejectionReason(code=self.code, message=self.message, details=self.details)


class ItemValidationError(ItemRejected):
    """Item shape or content is invalid."""

    code = RejectionCode.VALIDATION_ERROR


class ItemConflictError(ItemRejected):
    """A business rule rejects an otherwise valid item."""

    code = RejectionCode.CONFLICT


class ItemAuthorizationError(ItemRejected):
    """Caller may not perform this write."""

    code = RejectionCode.UNAUTHORIZED


class ItemStatus(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RejectionReason:
    code: RejectionCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "details": self.details}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RejectionReason:
        return cls(
            code=RejectionCode(data["code"]),
            message=data.get("message", ""),
            details=data.get("details") or {},
        )

    def describe(self) -> str:
        return f"{self.code.value}: {self.message}"


@dataclass
class ItemOutcome:
    """Result of one item of a write request.

    Attributes:
        item_id: Primary key of the item, or its index when it has none
        status: success or rejected
        data: Authoritative record after the write (success only)
        reason: Structured rejection (rejected only)
    """

    item_id: str
    status: ItemStatus
    data: dict[str, Any] | None = None
    reason: RejectionReason | None = None

    @classmethod
    def success(cls, item_id: str, data: dict[str, Any] | None = None) -> ItemOutcome:
        return cls(item_id=item_id, status=ItemStatus.SUCCESS, data=data)

    @classmethod
    def rejected(cls, item_id: str, reason: RejectionReason) -> ItemOutcome:
        return cls(item_id=item_id, status=ItemStatus.REJECTED, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"item_id": self.item_id, "status": self.status.value}
        if self.data is not None:
            result["data"] = self.data
        if self.reason is not None:
            result["reason"] = self.reason.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ItemOutcome:
        reason = data.get("reason")
        return cls(
            item_id=str(data["item_id"]),
            status=ItemStatus(data["status"]),
            data=data.get("data"),
            reason=RejectionReason.from_dict(reason) if reason else None,
        )


@dataclass
class ActionResult:
    """Outcome of a whole write request."""

    client_request_id: str
    results: list[ItemOutcome]
    replayed: bool = False

    @property
    def all_rejected(self) -> bool:
        return bool(self.results) and all(r.status == ItemStatus.REJECTED for r in self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_request_id": self.client_request_id,
            "results": [r.to_dict() for r in self.results],
            "replayed": self.replayed,
        }


@dataclass(frozen=True)
class ActionCapabilities:
    """What an action may do, declared at registration.

    Attributes:
        tables: Tables the action applies to
        operations: Operations it performs
        batch: Whether more than one item per request is accepted
        allow_partial: Whether items of a batch succeed independently
            (False means all-or-nothing)
        offline: Whether clients may queue it while disconnected
    """

    tables: frozenset[str]
    operations: frozenset[Operation]
    batch: bool = False
    allow_partial: bool = False
    offline: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables": sorted(self.tables),
            "operations": sorted(op.value for op in self.operations),
            "batch": self.batch,
            "allow_partial": self.allow_partial,
            "offline": self.offline,
        }


@dataclass
class ActionContext:
    """Per-request context handed to handlers."""

    identity: Identity
    table: str
    action: str
    client_request_id: str
    writer: RecordWriter
    scopes: frozenset[str]
    resolver: ScopeResolver

    def owns(self, record: dict[str, Any]) -> bool:
        """Whether the record routes to a scope the caller can read."""
        return self.resolver.resolve(record) in self.scopes


class WriteAction(ABC):
    """Base class for write action handlers.

    Subclasses set item_model to a pydantic model for shape validation and
    implement handle().

    Example:
        >>> class CompleteTodo(WriteAction):
        ...     item_model = CompleteTodoItem
        ...     async def handle(self, ctx, item):
        ...         return ctx.writer.update(ctx.table, item["id"], {"done": True})
    """

    item_model: type[BaseModel] | None = None

    def validate(self, item: dict[str, Any]) -> dict[str, Any]:
        """Validate item shape.

        Raises:
            ItemValidationError: If the item does not match item_model
        """
        if not isinstance(item, dict):
            raise ItemValidationError("Item must be an object")
        if self.item_model is None:
            return item
        try:
            model = self.item_model.model_validate(item)
        except ValidationError as e:
            raise ItemValidationError(
                "Item failed validation",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e
        return model.model_dump(exclude_unset=True)

    @abstractmethod
    async def handle(self, ctx: ActionContext, item: dict[str, Any]) -> dict[str, Any] | None:
        """Perform the write for one validated item.

        Returns:
            Authoritative record after the write, if any

        Raises:
            ItemRejected: To reject this item
        """
        ...


class RecordItem(BaseModel):
    """Default item shape: any object, extra fields kept."""

    model_config = ConfigDict(extra="allow")


class CreateRecordAction(WriteAction):
    """Creates a record owned by the caller."""

    item_model = RecordItem

    def __init__(self, owner_field: str | None = "user_id") -> None:
        self.owner_field = owner_field

    async def handle(self, ctx: ActionContext, item: dict[str, Any]) -> dict[str, Any] | None:
        if self.owner_field:
            item = {**item, self.owner_field: item.get(self.owner_field, ctx.identity.user_id)}
            if str(item[self.owner_field]) != ctx.identity.user_id:
                raise ItemAuthorizationError("Cannot create records for another user")
        try:
            return ctx.writer.create(ctx.table, item)
        except RecordExistsError as e:
            raise ItemConflictError(str(e), details={"record_id": e.record_id}) from e


class UpdateRecordAction(WriteAction):
    """Merges fields into a record the caller can see."""

    item_model = RecordItem

    def __init__(self, primary_key: str = "id") -> None:
        self.primary_key = primary_key

    async def handle(self, ctx: ActionContext, item: dict[str, Any]) -> dict[str, Any] | None:
        record_id = item.get(self.primary_key)
        if record_id in (None, ""):
            raise ItemValidationError(f"Missing '{self.primary_key}'")
        existing = ctx.writer.get(ctx.table, record_id)
        if existing is None:
            raise ItemConflictError("Record does not exist", details={"record_id": str(record_id)})
        if not ctx.owns(existing):
            raise ItemAuthorizationError("Record belongs to another scope")
        patch = {k: v for k, v in item.items() if k != self.primary_key}
        updated = ctx.writer.update(ctx.table, record_id, patch)
        if not ctx.owns(updated):
            raise ItemAuthorizationError("Update would move the record out of your scope")
        return updated


class DeleteRecordAction(WriteAction):
    """Deletes a record the caller can see."""

    item_model = RecordItem

    def __init__(self, primary_key: str = "id") -> None:
        self.primary_key = primary_key

    async def handle(self, ctx: ActionContext, item: dict[str, Any]) -> dict[str, Any] | None:
        record_id = item.get(self.primary_key)
        if record_id in (None, ""):
            raise ItemValidationError(f"Missing '{self.primary_key}'")
        existing = ctx.writer.get(ctx.table, record_id)
        if existing is None:
            raise ItemConflictError("Record does not exist", details={"record_id": str(record_id)})
        if not ctx.owns(existing):
            raise ItemAuthorizationError("Record belongs to another scope")
        ctx.writer.delete(ctx.table, record_id)
        return None
