"""
Action registry for the write gateway.

Maps (table, action name) to a handler and its declared capabilities. All
validation happens at registration, so a misconfigured action fails at
startup rather than on the first request.

Invariants:
    - Registry is mutable during startup, frozen before serving
    - An action name is unique per table
    - Every declared table is tracked for change capture
    - Declared operations and tables are never empty

How to change safely:
    - Register all actions before calling freeze()
    - Clients cache the capability listing; changing an action's offline
      flag only takes effect after they refetch it
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass

from ..capture.harmonic import Operation
from ..capture.tracker import ChangeCapture
from .actions import ActionCapabilities, WriteAction

logger = logging.getLogger(__name__)


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""

    pass


class DuplicateRegistrationError(Exception):
    """Raised when an action name is already registered for a table."""

    pass


class ActionRegistrationError(Exception):
    """Raised when an action declaration is invalid."""

    pass


class ActionNotFoundError(Exception):
    """No action with this name is registered for the table."""

    def __init__(self, table: str, name: str) -> None:
        super().__init__(f"Unknown action '{name}' for table '{table}'")
        self.table = table
        self.name = name


@dataclass(frozen=True)
class RegisteredAction:
    name: str
    handler: WriteAction
    capabilities: ActionCapabilities

    def describe(self) -> dict:
        return {"name": self.name, **self.capabilities.to_dict()}


class ActionRegistry:
    """Explicit registry of write actions.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free

    Example:
        >>> registry = ActionRegistry(capture)
        >>> registry.register(
        ...     "create",
        ...     CreateRecordAction(),
        ...     tables=["todos"],
        ...     operations=[Operation.CREATE],
        ...     offline=True,
        ... )
        >>> registry.freeze()
    """

    def __init__(self, capture: ChangeCapture) -> None:
        self.capture = capture
        self._actions: dict[tuple[str, str], RegisteredAction] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(
        self,
        name: str,
        handler: WriteAction,
        *,
        tables: Iterable[str],
        operations: Iterable[Operation | str],
        batch: bool = False,
        allow_partial: bool = False,
        offline: bool = False,
    ) -> ActionCapabilities:
        """Register an action for one or more tables.

        Raises:
            RegistryFrozenError: If registry is frozen
            ActionRegistrationError: If the declaration is invalid
            DuplicateRegistrationError: If the name is taken for a table
        """
        if not name or "/" in name:
            raise ActionRegistrationError(f"Invalid action name: {name!r}")
        if not isinstance(handler, WriteAction):
            raise ActionRegistrationError(
                f"Action '{name}' handler must be a WriteAction, got {type(handler).__name__}"
            )

        table_set = frozenset(tables)
        if not table_set:
            raise ActionRegistrationError(f"Action '{name}' declares no tables")
        untracked = sorted(t for t in table_set if not self.capture.is_tracked(t))
        if untracked:
            raise ActionRegistrationError(f"Action '{name}' targets untracked tables: {untracked}")

        try:
            op_set = frozenset(Operation(op) for op in operations)
        except ValueError as e:
            raise ActionRegistrationError(f"Action '{name}' declares an unknown operation: {e}") from e
        if not op_set:
            raise ActionRegistrationError(f"Action '{name}' declares no operations")
        if allow_partial and not batch:
            raise ActionRegistrationError(f"Action '{name}' allows partial success but not batches")

        capabilities = ActionCapabilities(
            tables=table_set,
            operations=op_set,
            batch=batch,
            allow_partial=allow_partial,
            offline=offline,
        )

        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(f"Cannot register action '{name}': registry is frozen")
            for table in table_set:
                if (table, name) in self._actions:
                    raise DuplicateRegistrationError(
                        f"Action '{name}' already registered for table '{table}'"
                    )
            for table in table_set:
                self._actions[(table, name)] = RegisteredAction(name, handler, capabilities)

        logger.debug(
            f"Registered action: {name}",
            extra={"tables": sorted(table_set), "offline": offline, "batch": batch},
        )
        return capabilities

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True
        logger.info(f"Action registry frozen with {len(self._actions)} actions")

    def get(self, table: str, name: str) -> RegisteredAction:
        """Look up an action.

        Raises:
            ActionNotFoundError: If not registered
        """
        try:
            return self._actions[(table, name)]
        except KeyError:
            raise ActionNotFoundError(table, name) from None

    def for_table(self, table: str) -> list[RegisteredAction]:
        return sorted(
            (a for (t, _), a in self._actions.items() if t == table),
            key=lambda a: a.name,
        )

    def __len__(self) -> int:
        return len(self._actions)
