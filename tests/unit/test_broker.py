"""
Unit tests for the in-memory broker and subscriptions.

Tests cover:
- Channel naming
- Routing to matching subscriptions only
- Publish failures and connection state
- Subscription timeouts and close
"""

import pytest

from backend.chorus_server.broadcast import (
    BrokerConnectionError,
    BrokerError,
    InMemoryBroker,
    channel_name,
    create_broker,
)
from backend.chorus_server.config import ServerConfig


class TestChannelName:
    """Tests for channel_name."""

    def test_scoped(self):
        assert channel_name("chorus", "user.7", "todos") == "chorus.user.7.todos"

    def test_default_scope(self):
        assert channel_name("chorus", "", "todos") == "chorus.todos"


class TestInMemoryBroker:
    """Tests for InMemoryBroker."""

    @pytest.fixture
    async def broker(self):
        broker = InMemoryBroker()
        await broker.connect()
        yield broker
        await broker.close()

    @pytest.mark.asyncio
    async def test_publish_requires_connection(self):
        broker = InMemoryBroker()
        with pytest.raises(BrokerConnectionError):
            await broker.publish("chorus.todos", {})

    @pytest.mark.asyncio
    async def test_routes_to_matching_channels(self, broker):
        """Only subscriptions holding the channel receive the message."""
        mine = broker.subscribe(["chorus.user.7.todos", "chorus.todos"])
        other = broker.subscribe(["chorus.user.8.todos"])

        await broker.publish("chorus.user.7.todos", {"id": "1"})
        await broker.publish("chorus.todos", {"id": "2"})

        first = await mine.get(timeout=1)
        second = await mine.get(timeout=1)
        assert [first.payload["id"], second.payload["id"]] == ["1", "2"]
        assert await other.get(timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_closed_subscription_receives_nothing(self, broker):
        async with broker.subscribe(["chorus.todos"]) as sub:
            assert broker.subscriber_count("chorus.todos") == 1
        assert broker.subscriber_count("chorus.todos") == 0

        await broker.publish("chorus.todos", {"id": "1"})
        assert sub.pending() == 0

    @pytest.mark.asyncio
    async def test_injected_failure(self, broker):
        broker.fail_next_publish()
        with pytest.raises(BrokerError):
            await broker.publish("chorus.todos", {"id": "1"})
        await broker.publish("chorus.todos", {"id": "1"})
        assert broker.published_on("chorus.todos") == [{"id": "1"}]

    @pytest.mark.asyncio
    async def test_wait_for_messages(self, broker):
        assert await broker.wait_for_messages(1, timeout=0.05) is False
        await broker.publish("chorus.todos", {"id": "1"})
        assert await broker.wait_for_messages(1, timeout=0.05) is True

    @pytest.mark.asyncio
    async def test_close_drops_subscriptions(self, broker):
        broker.subscribe(["a", "b"])
        broker.subscribe(["b"])
        assert broker.subscriber_count() == 2
        await broker.close()
        assert broker.subscriber_count() == 0
        assert not broker.is_connected


class TestCreateBroker:
    """Tests for create_broker."""

    def test_default_is_memory(self):
        assert isinstance(create_broker(ServerConfig()), InMemoryBroker)
