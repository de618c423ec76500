"""
Unit tests for scope resolution.

Tests cover:
- Key formats for the none, static and tenant strategies
- Identity read scopes covering every key a user's records resolve to
- Failure handling (default scope, never raising)
"""

import pytest

from backend.chorus_server.config import ScopeConfig, ScopeStrategy
from backend.chorus_server.scope import (
    DEFAULT_SCOPE,
    Identity,
    ScopeResolver,
    TenantScopeResolver,
    UserScopeResolver,
    create_scope_resolver,
)


class TestUserScopeResolver:
    """Tests for the none and static strategies."""

    def test_owned_record(self):
        resolver = UserScopeResolver()
        assert resolver.resolve({"id": "1", "user_id": 7}) == "user.7"

    def test_unowned_record_is_shared(self):
        resolver = UserScopeResolver()
        assert resolver.resolve({"id": "1"}) == ""

    def test_static_prefix(self):
        resolver = UserScopeResolver(prefix="acme")
        assert resolver.resolve({"user_id": "7"}) == "acme.user.7"
        assert resolver.resolve({"user_id": None}) == "acme"

    def test_custom_user_field(self):
        resolver = UserScopeResolver(user_field="owner")
        assert resolver.resolve({"owner": "bob"}) == "user.bob"

    def test_scopes_for_cover_owned_and_shared(self):
        resolver = UserScopeResolver(prefix="acme")
        identity = Identity(user_id="7")
        scopes = resolver.scopes_for(identity)
        assert resolver.resolve({"user_id": "7"}) in scopes
        assert resolver.resolve({}) in scopes
        assert resolver.resolve({"user_id": "8"}) not in scopes

    def test_broken_record_falls_back_to_default(self):
        class Broken(dict):
            def get(self, key, default=None):
                raise RuntimeError("boom")

        assert UserScopeResolver().resolve(Broken()) == DEFAULT_SCOPE


class TestTenantScopeResolver:
    """Tests for the tenant strategy."""

    def test_owned_record(self):
        resolver = TenantScopeResolver()
        record = {"tenant_id": "t1", "user_id": "7"}
        assert resolver.resolve(record) == "tenant.t1.user.7"

    def test_tenant_wide_record(self):
        assert TenantScopeResolver().resolve({"tenant_id": "t1"}) == "tenant.t1"

    def test_missing_tenant_uses_default(self):
        assert TenantScopeResolver().resolve({"user_id": "7"}) == DEFAULT_SCOPE

    def test_lookup_derives_tenant(self):
        projects = {"p1": "t9"}
        resolver = TenantScopeResolver(tenant_lookup=lambda r: projects.get(r.get("project_id")))
        assert resolver.resolve({"project_id": "p1"}) == "tenant.t9"

    def test_failing_lookup_never_raises(self):
        def lookup(record):
            raise KeyError("project")

        resolver = TenantScopeResolver(tenant_lookup=lookup)
        assert resolver.resolve({"user_id": "7"}) == DEFAULT_SCOPE

    def test_scopes_for_identity(self):
        resolver = TenantScopeResolver()
        scopes = resolver.scopes_for(Identity(user_id="7", tenant_id="t1"))
        assert scopes == ["tenant.t1", "tenant.t1.user.7"]

    def test_identity_without_tenant_reads_nothing(self):
        assert TenantScopeResolver().scopes_for(Identity(user_id="7")) == []


class TestCreateScopeResolver:
    """Tests for create_scope_resolver."""

    @pytest.mark.parametrize(
        "config,expected",
        [
            (ScopeConfig(), "user.7"),
            (ScopeConfig(strategy=ScopeStrategy.STATIC, prefix="app"), "app.user.7"),
            (ScopeConfig(strategy=ScopeStrategy.TENANT), "tenant.t1.user.7"),
        ],
    )
    def test_strategies(self, config, expected):
        resolver = create_scope_resolver(config)
        assert isinstance(resolver, ScopeResolver)
        assert resolver.resolve({"user_id": "7", "tenant_id": "t1"}) == expected
