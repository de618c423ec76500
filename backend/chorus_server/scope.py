"""
Scope resolution for Chorus Server.

A scope key partitions harmonics so that each client only receives the
changes it is authorized to see. The resolver runs in two directions:

    record   -> scope key      (capture time, routes the harmonic)
    identity -> scope keys     (read time, filters snapshots and feeds)

Key formats per strategy:

    none    user.{user_id}
    static  {prefix}.user.{user_id}          ({prefix} for records without owner)
    tenant  tenant.{tenant_id}.user.{user_id} (tenant.{tenant_id} when unowned)

Invariants:
    - resolve() never raises; failures log a warning and return ""
    - Every key resolve() can produce for an identity's records appears in
      scopes_for() of that identity
    - Lookups are read-only

How to change safely:
    - Changing a key format re-routes every live channel; clients must
      re-snapshot after a deploy that does so
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from .config import ScopeConfig, ScopeStrategy

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = ""

TenantLookup = Callable[[Mapping[str, Any]], "str | None"]


@dataclass(frozen=True)
class Identity:
    """Authenticated caller.

    Attributes:
        user_id: User identifier
        tenant_id: Tenant the user belongs to (tenant strategy)
    """

    user_id: str
    tenant_id: str | None = None


@runtime_checkable
class ScopeResolver(Protocol):
    """Maps records and identities to scope keys."""

    def resolve(self, record: Mapping[str, Any]) -> str:
        """Scope key for a record, or "" when it cannot be determined."""
        ...

    def scopes_for(self, identity: Identity) -> list[str]:
        """Every scope key the identity may read."""
        ...

    def personal_scope(self, identity: Identity) -> str:
        """Scope carrying notifications addressed to this identity only."""
        ...


class UserScopeResolver:
    """Scopes keyed by the owning user, optionally under a static prefix.

    Records without an owner fall into the shared scope (the prefix, or ""
    when there is none), which every identity may read.
    """

    def __init__(self, user_field: str = "user_id", prefix: str = "") -> None:
        self.user_field = user_field
        self.prefix = prefix

    def _join(self, *parts: str) -> str:
        return ".".join(p for p in (self.prefix, *parts) if p)

    def resolve(self, record: Mapping[str, Any]) -> str:
        try:
            user_id = record.get(self.user_field)
            if user_id in (None, ""):
                return self.prefix
            return self._join("user", str(user_id))
        except Exception as e:
            logger.warning(
                "Scope resolution failed, using default scope",
                extra={"error": str(e), "strategy": "user"},
            )
            return DEFAULT_SCOPE

    def personal_scope(self, identity: Identity) -> str:
        return self._join("user", identity.user_id)

    def scopes_for(self, identity: Identity) -> list[str]:
        return [self.prefix, self.personal_scope(identity)]


class TenantScopeResolver:
    """Scopes keyed by tenant, then by owning user inside the tenant.

    The tenant is read from the record's tenant field; when absent, an
    optional read-only lookup derives it from related data.
    """

    def __init__(
        self,
        tenant_field: str = "tenant_id",
        user_field: str = "user_id",
        tenant_lookup: TenantLookup | None = None,
    ) -> None:
        self.tenant_field = tenant_field
        self.user_field = user_field
        self.tenant_lookup = tenant_lookup

    def _tenant_of(self, record: Mapping[str, Any]) -> str | None:
        tenant = record.get(self.tenant_field)
        if tenant in (None, "") and self.tenant_lookup is not None:
            tenant = self.tenant_lookup(record)
        return str(tenant) if tenant not in (None, "") else None

    def resolve(self, record: Mapping[str, Any]) -> str:
        try:
            tenant = self._tenant_of(record)
            if tenant is None:
                logger.warning(
                    "Record has no tenant, using default scope",
                    extra={"tenant_field": self.tenant_field},
                )
                return DEFAULT_SCOPE
            user_id = record.get(self.user_field)
            if user_id in (None, ""):
                return f"tenant.{tenant}"
            return f"tenant.{tenant}.user.{user_id}"
        except Exception as e:
            logger.warning(
                "Scope resolution failed, using default scope",
                extra={"error": str(e), "strategy": "tenant"},
            )
            return DEFAULT_SCOPE

    def personal_scope(self, identity: Identity) -> str:
        if not identity.tenant_id:
            return DEFAULT_SCOPE
        return f"tenant.{identity.tenant_id}.user.{identity.user_id}"

    def scopes_for(self, identity: Identity) -> list[str]:
        # No tenant means no readable scope; unscoped records stay private
        if not identity.tenant_id:
            return []
        return [f"tenant.{identity.tenant_id}", self.personal_scope(identity)]


def create_scope_resolver(
    config: ScopeConfig,
    tenant_lookup: TenantLookup | None = None,
) -> ScopeResolver:
    """Create the resolver selected by configuration.

    Args:
        config: Scope configuration
        tenant_lookup: Optional read-only tenant derivation (tenant strategy)

    Returns:
        ScopeResolver instance
    """
    if config.strategy == ScopeStrategy.NONE:
        return UserScopeResolver(user_field=config.user_field)
    if config.strategy == ScopeStrategy.STATIC:
        return UserScopeResolver(user_field=config.user_field, prefix=config.prefix)
    if config.strategy == ScopeStrategy.TENANT:
        return TenantScopeResolver(
            tenant_field=config.tenant_field,
            user_field=config.user_field,
            tenant_lookup=tenant_lookup,
        )
    raise ValueError(f"Unsupported scope strategy: {config.strategy}")
