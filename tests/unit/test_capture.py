"""
Unit tests for change capture and the record store.

Tests cover:
- Entity tracking and payload projection
- One harmonic per committed mutation, none on rollback
- Scope keys stored on rows and harmonics
- Record store errors
"""

import pytest

from backend.chorus_server.capture import (
    DuplicateTrackingError,
    Operation,
    TrackedEntity,
    UntrackedTableError,
)
from backend.chorus_server.scope import Identity
from backend.chorus_server.store.records import RecordExistsError, RecordNotFoundError


class TestTrackedEntity:
    """Tests for TrackedEntity."""

    def test_project_keeps_primary_key_and_sync_fields(self):
        entity = TrackedEntity("todos", sync_fields=("title",))
        assert entity.project({"id": "1", "title": "Milk", "secret": "x"}) == {
            "id": "1",
            "title": "Milk",
        }

    def test_project_without_sync_fields_copies_record(self):
        entity = TrackedEntity("notes")
        assert entity.project({"id": "1", "body": "b"}) == {"id": "1", "body": "b"}

    def test_visible_to_uses_filter(self):
        entity = TrackedEntity("todos", sync_filter=lambda r, i: not r.get("archived"))
        identity = Identity(user_id="7")
        assert entity.visible_to({"archived": False}, identity)
        assert not entity.visible_to({"archived": True}, identity)

    def test_schema(self):
        entity = TrackedEntity("todos", primary_key="uid", indexes=("done",))
        assert entity.schema() == {"primary_key": "uid", "indexes": ["done"]}


class TestChangeCapture:
    """Tests for ChangeCapture through the record store."""

    @pytest.mark.asyncio
    async def test_duplicate_tracking_rejected(self, services):
        with pytest.raises(DuplicateTrackingError):
            services.capture.track(TrackedEntity("todos"))

    @pytest.mark.asyncio
    async def test_untracked_table(self, services):
        with pytest.raises(UntrackedTableError):
            services.capture.entity("missing")

    @pytest.mark.asyncio
    async def test_tables_and_schema(self, services):
        assert services.capture.tables() == ["todos"]
        assert services.capture.schema()["todos"]["indexes"] == ["user_id", "done"]

    @pytest.mark.asyncio
    async def test_create_captures_one_harmonic(self, services):
        async with services.records.writer(request_id="r1") as w:
            todo = w.create("todos", {"title": "Milk", "user_id": "7", "secret": "x"})

        entries = await services.log.entries_for_record("todos", todo["id"])
        assert len(entries) == 1
        entry = entries[0]
        assert entry.operation == Operation.CREATE
        assert entry.scope_key == "user.7"
        assert entry.request_id == "r1"
        assert "secret" not in entry.payload

    @pytest.mark.asyncio
    async def test_rollback_discards_record_and_harmonic(self, services):
        with pytest.raises(RuntimeError):
            async with services.records.writer() as w:
                w.create("todos", {"id": "a", "title": "Milk"})
                raise RuntimeError("abort")

        assert await services.records.get("todos", "a") is None
        assert await services.log.entries_for_record("todos", "a") == []

    @pytest.mark.asyncio
    async def test_update_merges_and_rescopes(self, services):
        async with services.records.writer() as w:
            w.create("todos", {"id": "a", "title": "Milk", "user_id": "7"})
        async with services.records.writer() as w:
            updated = w.update("todos", "a", {"user_id": "8", "id": "changed"})

        assert updated == {"id": "a", "title": "Milk", "user_id": "8"}
        assert await services.records.rows("todos", ["user.8"]) == [updated]
        assert await services.records.rows("todos", ["user.7"]) == []

    @pytest.mark.asyncio
    async def test_delete_captures_pre_image_scope(self, services):
        async with services.records.writer() as w:
            w.create("todos", {"id": "a", "title": "Milk", "user_id": "7"})
        async with services.records.writer() as w:
            w.delete("todos", "a")

        entries = await services.log.entries_for_record("todos", "a")
        assert [e.operation for e in entries] == [Operation.CREATE, Operation.DELETE]
        assert entries[1].payload is None
        assert entries[1].scope_key == "user.7"
        assert await services.records.count("todos") == 0

    @pytest.mark.asyncio
    async def test_create_existing_raises(self, services):
        async with services.records.writer() as w:
            w.create("todos", {"id": "a"})
        with pytest.raises(RecordExistsError):
            async with services.records.writer() as w:
                w.create("todos", {"id": "a"})

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, services):
        with pytest.raises(RecordNotFoundError):
            async with services.records.writer() as w:
                w.update("todos", "missing", {"title": "x"})

    @pytest.mark.asyncio
    async def test_generated_primary_key(self, services):
        async with services.records.writer() as w:
            todo = w.create("todos", {"title": "Milk"})
        assert todo["id"]
        assert await services.records.get("todos", todo["id"]) == todo

    @pytest.mark.asyncio
    async def test_capture_rejection_uses_personal_scope(self, services):
        identity = Identity(user_id="7")
        async with services.db.write_transaction() as txn:
            entry = services.capture.capture_rejection(
                txn, "todos", Operation.UPDATE, "a", identity, "validation_error", request_id="r1"
            )
        assert entry.rejected
        assert entry.scope_key == "user.7"
        assert entry.rejected_reason == "validation_error"
