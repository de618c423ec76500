"""
Unit tests for HarmonicConsumer.

Tests cover:
- Initial snapshot versus catch-up from the watermark
- Paged catch-up and expired cursors
- Truncated snapshots left unapplied
- Gap detection on pushed entries
- Rejection reporting
- Table state tracking and the live loop
"""

import os
import tempfile

import pytest

from sdk.chorus_sdk import (
    CursorExpiredError,
    HarmonicConsumer,
    LogEntry,
    ReplicaSchema,
    ReplicaStore,
    RequestError,
    SnapshotTruncatedError,
    SyncStatus,
    TableSchema,
)
from tests.support import FakeTransport

SCHEMA = ReplicaSchema(version="1", tables=(TableSchema("todos"), TableSchema("notes")))


def wire(entry_id, record_id="A", operation="update", previous_id=None, **payload):
    data = {
        "id": entry_id,
        "table": "todos",
        "record_id": record_id,
        "operation": operation,
        "payload": None if operation == "delete" else {"id": record_id, **payload},
    }
    if previous_id is not None:
        data["previous_id"] = previous_id
    return data


def page(*entries, has_more=False):
    return {
        "table": "todos",
        "entries": list(entries),
        "cursor": entries[-1]["id"] if entries else None,
        "has_more": has_more,
    }


@pytest.fixture
async def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = ReplicaStore(os.path.join(tmpdir, "replica.db"), SCHEMA)
        await store.open()
        yield store
        store.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def consumer(store, transport):
    return HarmonicConsumer(store, transport, long_poll_wait=0.0, retry_delay=lambda attempt: 0.0)


class TestInitialize:
    """Tests for initial load."""

    @pytest.mark.asyncio
    async def test_snapshot_without_watermark(self, consumer, store, transport):
        transport.snapshots["todos"] = ([{"id": "A", "title": "Milk"}], "5")
        seen = []
        consumer.on_snapshot(seen.append)

        await consumer.initialize("todos")

        assert transport.fetches == [("snapshot", "todos", None)]
        assert store.get("todos", "A") == {"id": "A", "title": "Milk"}
        assert store.watermark("todos") == "5"
        assert seen == ["todos"]
        assert consumer.state("todos").status == SyncStatus.READY
        assert consumer.state("todos").progress is None

    @pytest.mark.asyncio
    async def test_catch_up_from_watermark(self, consumer, store, transport):
        await store.apply_snapshot("todos", [{"id": "A", "title": "Milk"}], "1")
        transport.pages["todos"] = [page(wire("2", title="Oat milk"))]

        await consumer.initialize("todos")

        assert transport.fetches == [("changes", "todos", "1")]
        assert store.get("todos", "A")["title"] == "Oat milk"
        assert store.watermark("todos") == "2"

    @pytest.mark.asyncio
    async def test_catch_up_follows_pages(self, consumer, store, transport):
        await store.apply_snapshot("todos", [], None)
        transport.pages["todos"] = [
            page(wire("1", "A", "create"), has_more=True),
            page(wire("2", "B", "create")),
        ]

        applied = await consumer.catch_up("todos")

        assert applied == 2
        assert [f[2] for f in transport.fetches] == ["", "1"]
        assert [r["id"] for r in store.read("todos")] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_expired_cursor_falls_back_to_snapshot(self, consumer, store, transport):
        await store.apply_snapshot("todos", [{"id": "old"}], "1")
        transport.pages["todos"] = [CursorExpiredError("Cursor expired")]
        transport.snapshots["todos"] = ([{"id": "new"}], "9")

        await consumer.initialize("todos")

        assert [f[0] for f in transport.fetches] == ["changes", "snapshot"]
        assert [r["id"] for r in store.read("todos")] == ["new"]
        assert consumer.state("todos").status == SyncStatus.READY

    @pytest.mark.asyncio
    async def test_truncated_snapshot_not_applied(self, consumer, store, transport):
        await store.apply_snapshot("todos", [{"id": "old"}], "1")
        transport.snapshots["todos"] = ([{"id": "a"}, {"id": "b"}], "9")
        transport.truncated.add("todos")

        with pytest.raises(SnapshotTruncatedError):
            await consumer.initialize("todos", force_snapshot=True)

        assert [r["id"] for r in store.read("todos")] == ["old"]
        assert store.watermark("todos") == "1"
        assert consumer.state("todos").status == SyncStatus.ERROR

    @pytest.mark.asyncio
    async def test_truncated_snapshot_stops_live_loop(self, consumer, store, transport):
        await store.apply_snapshot("todos", [{"id": "old"}], "1")
        transport.pages["todos"] = [CursorExpiredError("Cursor expired")]
        transport.snapshots["todos"] = ([{"id": "a"}, {"id": "b"}], "9")
        transport.truncated.add("todos")

        await consumer.run("todos")

        assert [f[0] for f in transport.fetches] == ["changes", "snapshot"]
        assert store.watermark("todos") == "1"
        assert consumer.state("todos").status == SyncStatus.ERROR

    @pytest.mark.asyncio
    async def test_failure_sets_error_state(self, consumer, store, transport):
        await store.apply_snapshot("todos", [], "1")
        transport.pages["todos"] = [RequestError("Forbidden", status=403)]

        with pytest.raises(RequestError):
            await consumer.initialize("todos")

        state = consumer.state("todos")
        assert state.status == SyncStatus.ERROR
        assert state.error == "Forbidden"
        assert consumer.status == SyncStatus.ERROR

    @pytest.mark.asyncio
    async def test_state_listener_sees_transitions(self, consumer, transport):
        statuses = []
        consumer.on_state(lambda table, state: statuses.append(state.status))

        await consumer.initialize("todos")

        assert statuses == [SyncStatus.INITIALIZING, SyncStatus.READY]


class TestDeliver:
    """Tests for applying pushed and polled entries."""

    @pytest.mark.asyncio
    async def test_gap_triggers_resync(self, consumer, store, transport):
        await store.apply_snapshot("todos", [{"id": "A", "x": 1}], "1")
        transport.pages["todos"] = [page(wire("2", x=2), wire("3", previous_id="2", x=3))]

        await consumer.deliver([LogEntry.from_dict(wire("3", previous_id="2", x=3))])

        assert transport.fetches == [("changes", "todos", "1")]
        assert store.get("todos", "A") == {"id": "A", "x": 3}
        assert store.watermark("todos") == "3"

    @pytest.mark.asyncio
    async def test_contiguous_entry_applied_directly(self, consumer, store, transport):
        await store.apply_snapshot("todos", [{"id": "A", "x": 1}], "1")

        applied = await consumer.deliver([LogEntry.from_dict(wire("2", previous_id="1", x=2))])

        assert applied == 1
        assert transport.fetches == []

    @pytest.mark.asyncio
    async def test_gaps_ignored_when_disabled(self, consumer, store, transport):
        await store.apply_snapshot("todos", [{"id": "A", "x": 1}], "1")

        await consumer.deliver([LogEntry.from_dict(wire("3", previous_id="2", x=3))], check_gaps=False)

        assert transport.fetches == []
        assert store.get("todos", "A")["x"] == 3

    @pytest.mark.asyncio
    async def test_entries_for_unloaded_table_dropped(self, consumer, store):
        assert await consumer.deliver([LogEntry.from_dict(wire("1", operation="create"))]) == 0
        assert store.read("todos") == []

    @pytest.mark.asyncio
    async def test_rejection_reported_once(self, consumer, store):
        await store.apply_snapshot("todos", [{"id": "A", "x": 1}], "1")
        reported = []
        consumer.on_rejection(reported.append)
        data = dict(wire("2", x=9), rejected=True, rejected_reason="conflict: stale", request_id="r1")

        await consumer.deliver([LogEntry.from_dict(data)])
        await consumer.deliver([LogEntry.from_dict(data)])

        assert [e.request_id for e in reported] == ["r1"]
        assert store.get("todos", "A") == {"id": "A", "x": 1}

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_delivery(self, consumer, store):
        await store.apply_snapshot("todos", [{"id": "A"}], "1")

        def boom(entry):
            raise RuntimeError("listener bug")

        consumer.on_rejection(boom)
        rejected = dict(wire("2", x=1), rejected=True, rejected_reason="conflict")

        applied = await consumer.deliver([LogEntry.from_dict(rejected), LogEntry.from_dict(wire("3", x=3))])

        assert applied == 1
        assert store.get("todos", "A")["x"] == 3


class TestLiveLoop:
    """Tests for run() and overall status."""

    @pytest.mark.asyncio
    async def test_run_applies_until_terminal_error(self, consumer, store, transport):
        await store.apply_snapshot("todos", [{"id": "A", "x": 1}], "1")
        transport.pages["todos"] = [
            page(wire("2", x=2)),
            page(wire("3", x=3)),
            RequestError("Gone away", status=404),
        ]

        await consumer.run("todos")

        assert store.get("todos", "A")["x"] == 3
        assert consumer.state("todos").status == SyncStatus.ERROR
        assert consumer.state("todos").error == "Gone away"

    @pytest.mark.asyncio
    async def test_overall_status(self, consumer, store):
        assert consumer.status == SyncStatus.IDLE
        await consumer.initialize("todos")
        consumer.state("notes")
        assert consumer.status == SyncStatus.INITIALIZING
        await consumer.initialize("notes")
        assert consumer.status == SyncStatus.READY
        assert consumer.states()["todos"].to_dict()["status"] == "ready"
