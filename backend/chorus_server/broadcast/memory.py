"""
In-memory broker for a single process.

Used for local development, tests and single-node deployments where the
HTTP long-poll handlers and the dispatcher share one event loop.

Invariants:
    - Messages are lost on process exit (the harmonic log is the durable copy)
    - Publish order is preserved per subscription

How to change safely:
    - Keep interface compatible with the Broker protocol
    - Testing helpers must not change publish semantics when unused
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from .base import BrokerConnectionError, BrokerError, BrokerMessage, Subscription, SubscriptionHub

logger = logging.getLogger(__name__)


class InMemoryBroker:
    """In-process implementation of the Broker protocol.

    Keeps a history of published messages for assertions in tests.

    Example:
        >>> broker = InMemoryBroker()
        >>> await broker.connect()
        >>> sub = broker.subscribe(["chorus.todos"])
        >>> await broker.publish("chorus.todos", {"id": "1"})
        >>> (await sub.get(timeout=1)).payload
        {'id': '1'}
    """

    def __init__(self) -> None:
        self._hub = SubscriptionHub()
        self._connected = False
        self._published: list[BrokerMessage] = []
        self._failures: list[Exception] = []
        self._published_event = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("InMemoryBroker connected")

    async def close(self) -> None:
        self._connected = False
        self._hub.close_all()
        logger.debug("InMemoryBroker closed")

    async def publish(self, channel: str, payload: dict[str, Any]) -> None:
        if not self._connected:
            raise BrokerConnectionError("InMemoryBroker is not connected")
        if self._failures:
            raise self._failures.pop(0)

        message = BrokerMessage(channel=channel, payload=payload)
        self._published.append(message)
        delivered = self._hub.route(message)
        self._published_event.set()

        logger.debug(
            "Published message",
            extra={"channel": channel, "subscribers": delivered},
        )

    def subscribe(self, channels: Iterable[str]) -> Subscription:
        return self._hub.add(channels)

    # Testing helpers

    def fail_next_publish(self, exception: Exception | None = None, times: int = 1) -> None:
        """Make the next publish calls raise."""
        for _ in range(times):
            self._failures.append(exception or BrokerError("injected publish failure"))

    @property
    def published(self) -> list[BrokerMessage]:
        return list(self._published)

    def published_on(self, channel: str) -> list[dict[str, Any]]:
        return [m.payload for m in self._published if m.channel == channel]

    def subscriber_count(self, channel: str | None = None) -> int:
        return self._hub.subscriber_count(channel)

    async def wait_for_messages(self, count: int, timeout: float = 5.0) -> bool:
        """Wait until at least count messages were published.

        Returns:
            True if count reached, False if timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while len(self._published) < count:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            self._published_event.clear()
            try:
                await asyncio.wait_for(self._published_event.wait(), remaining)
            except asyncio.TimeoutError:
                return len(self._published) >= count
        return True
