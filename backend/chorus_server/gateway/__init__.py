"""
Write action gateway: action handlers, registry and request processing.
"""

from .actions import (
    ActionCapabilities,
    ActionContext,
    ActionResult,
    CreateRecordAction,
    DeleteRecordAction,
    ItemAuthorizationError,
    ItemConflictError,
    ItemOutcome,
    ItemRejected,
    ItemStatus,
    ItemValidationError,
    RejectionCode,
    RejectionReason,
    UpdateRecordAction,
    WriteAction,
)
from .gateway import (
    GatewayError,
    IdempotencyCache,
    InvalidRequestError,
    RequestIdConflictError,
    WriteGateway,
)
from .registry import (
    ActionNotFoundError,
    ActionRegistrationError,
    ActionRegistry,
    DuplicateRegistrationError,
    RegisteredAction,
    RegistryFrozenError,
)

__all__ = [
    "ActionCapabilities",
    "ActionContext",
    "ActionNotFoundError",
    "ActionRegistrationError",
    "ActionRegistry",
    "ActionResult",
    "CreateRecordAction",
    "DeleteRecordAction",
    "DuplicateRegistrationError",
    "GatewayError",
    "IdempotencyCache",
    "InvalidRequestError",
    "ItemAuthorizationError",
    "ItemConflictError",
    "ItemOutcome",
    "ItemRejected",
    "ItemStatus",
    "ItemValidationError",
    "RegisteredAction",
    "RegistryFrozenError",
    "RejectionCode",
    "RejectionReason",
    "RequestIdConflictError",
    "UpdateRecordAction",
    "WriteAction",
    "WriteGateway",
]
