"""
Unit tests for SDK type annotations.

SDK modules use postponed annotations, so a bad hint only fails when
something (pydantic, a type checker, get_type_hints) evaluates it.
"""

import typing
from typing import Any

from sdk.chorus_sdk import (
    ClientSettings,
    HttpTransport,
    LogEntry,
    OfflineWriteQueue,
    QueueEntry,
    ReplicaStore,
)


class TestAnnotations:
    """Public annotations resolve to builtin generics and X | None unions."""

    def test_queue_entry_fields(self):
        hints = typing.get_type_hints(QueueEntry)
        assert hints["reason"] == dict[str, Any] | None
        assert hints["results"] == list[dict[str, Any]] | None
        assert hints["last_attempt_at"] == int | None

    def test_method_signatures(self):
        assert typing.get_type_hints(OfflineWriteQueue.wait_for)["timeout"] == float | None
        assert typing.get_type_hints(HttpTransport.fetch_changes)["after"] == str | None
        assert typing.get_type_hints(ReplicaStore.apply_snapshot)["cursor"] == str | None

    def test_log_entry_resolves(self):
        assert typing.get_type_hints(LogEntry)["id"] is str

    def test_settings_optional_field(self):
        assert ClientSettings(user_id="7").tenant_id is None
        assert ClientSettings(user_id="7", tenant_id="acme").tenant_id == "acme"
