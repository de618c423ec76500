"""
Unit tests for the broadcast dispatcher.

Tests cover:
- Publishing unprocessed harmonics on scoped channels with previous_id
- Failed publishes left for the next scan, without reordering
- Several dispatchers marking each entry once
- The background loop woken by commits
"""

import asyncio

import pytest

from backend.chorus_server.broadcast import BroadcastDispatcher
from backend.chorus_server.config import BroadcastConfig


async def create_todo(services, record_id, user_id="7"):
    async with services.records.writer() as w:
        w.create("todos", {"id": record_id, "title": record_id, "user_id": user_id})
    return (await services.log.entries_for_record("todos", record_id))[-1]


class TestBroadcastDispatcher:
    """Tests for BroadcastDispatcher."""

    @pytest.mark.asyncio
    async def test_publishes_and_marks(self, services, broker):
        first = await create_todo(services, "a")
        second = await create_todo(services, "b", user_id=None)

        result = await services.dispatcher.dispatch_pending()

        assert result.published == 2
        assert await services.log.unprocessed() == []
        scoped = broker.published_on("chorus.user.7.todos")
        assert [m["id"] for m in scoped] == [first.id]
        assert "previous_id" not in scoped[0]
        assert [m["id"] for m in broker.published_on("chorus.todos")] == [second.id]

    @pytest.mark.asyncio
    async def test_previous_id_chains_per_scope(self, services, broker):
        first = await create_todo(services, "a")
        await create_todo(services, "b", user_id="8")
        third = await create_todo(services, "c")

        await services.dispatcher.dispatch_pending()

        messages = broker.published_on("chorus.user.7.todos")
        assert [m["id"] for m in messages] == [first.id, third.id]
        assert messages[1]["previous_id"] == first.id

    @pytest.mark.asyncio
    async def test_failed_publish_left_for_rescan(self, services, broker):
        """A failure stops the scan; the next scan publishes in order."""
        first = await create_todo(services, "a")
        second = await create_todo(services, "b")
        broker.fail_next_publish()

        result = await services.dispatcher.dispatch_pending()
        assert result.failed == 1
        assert result.published == 0
        assert len(await services.log.unprocessed()) == 2

        result = await services.dispatcher.dispatch_pending()
        assert result.published == 2
        ids = [m["id"] for m in broker.published_on("chorus.user.7.todos")]
        assert ids == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_two_dispatchers_mark_once(self, services, broker):
        await create_todo(services, "a")
        other = BroadcastDispatcher(services.log, broker, services.config.broadcast)

        results = await asyncio.gather(
            services.dispatcher.dispatch_pending(),
            other.dispatch_pending(),
        )

        assert sum(r.published for r in results) == 1
        assert await services.log.unprocessed() == []

    @pytest.mark.asyncio
    async def test_batch_size_limits_scan(self, services, broker):
        for i in range(3):
            await create_todo(services, f"t{i}")
        small = BroadcastDispatcher(services.log, broker, BroadcastConfig(batch_size=2))

        assert (await small.dispatch_pending()).published == 2
        assert (await small.dispatch_pending()).published == 1

    @pytest.mark.asyncio
    async def test_loop_publishes_new_commits(self, services, broker):
        task = asyncio.create_task(services.dispatcher.start())
        try:
            await create_todo(services, "a")
            assert await broker.wait_for_messages(1, timeout=2.0)
            assert services.dispatcher.stats["running"]
        finally:
            await services.dispatcher.stop()
            await asyncio.wait_for(task, 2.0)
        assert not services.dispatcher.stats["running"]
