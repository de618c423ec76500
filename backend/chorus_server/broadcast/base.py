"""
Publish/subscribe abstraction for broadcasting harmonics.

A channel is a plain string key. Brokers deliver published payloads to every
local subscription whose channel set contains the channel. The dispatcher
publishes, the long-poll endpoint subscribes.

Channel naming:
    {namespace}.{scope_key}.{table}      scoped entries
    {namespace}.{table}                  entries in the default ("") scope

Invariants:
    - Delivery to one subscription preserves publish order per channel
    - publish() raises BrokerError on failure; it never drops silently
    - A closed subscription receives nothing further

How to change safely:
    - Protocol changes require updating all implementations
    - Changing channel_name() re-routes every live client
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class BrokerError(Exception):
    """Base exception for broker operations."""

    pass


class BrokerConnectionError(BrokerError):
    """Connection to the broker backend failed."""

    pass


def channel_name(namespace: str, scope_key: str, table: str) -> str:
    """Channel for a table within a scope."""
    if scope_key:
        return f"{namespace}.{scope_key}.{table}"
    return f"{namespace}.{table}"


@dataclass(frozen=True)
class BrokerMessage:
    """A payload delivered on a channel."""

    channel: str
    payload: dict[str, Any]


class Subscription:
    """Local receiver for a set of channels.

    Usable as an async context manager and an async iterator.

    Example:
        >>> async with broker.subscribe(["chorus.user.7.todos"]) as sub:
        ...     message = await sub.get(timeout=5.0)
    """

    def __init__(self, hub: SubscriptionHub, channels: Iterable[str]) -> None:
        self.channels = frozenset(channels)
        self._hub = hub
        self._queue: asyncio.Queue[BrokerMessage] = asyncio.Queue()
        self._closed = False

    def deliver(self, message: BrokerMessage) -> None:
        if not self._closed:
            self._queue.put_nowait(message)

    async def get(self, timeout: float | None = None) -> BrokerMessage | None:
        """Next message, or None if the timeout expires first."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._hub.remove(self)

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.close()

    def __aiter__(self) -> AsyncIterator[BrokerMessage]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[BrokerMessage]:
        while not self._closed:
            yield await self._queue.get()


class SubscriptionHub:
    """Routes messages to the local subscriptions of each channel."""

    def __init__(self) -> None:
        self._by_channel: dict[str, set[Subscription]] = defaultdict(set)

    def add(self, channels: Iterable[str]) -> Subscription:
        subscription = Subscription(self, channels)
        for channel in subscription.channels:
            self._by_channel[channel].add(subscription)
        return subscription

    def remove(self, subscription: Subscription) -> None:
        for channel in subscription.channels:
            subs = self._by_channel.get(channel)
            if subs is None:
                continue
            subs.discard(subscription)
            if not subs:
                del self._by_channel[channel]

    def route(self, message: BrokerMessage) -> int:
        """Deliver to every matching subscription.

        Returns:
            Number of subscriptions reached
        """
        subs = list(self._by_channel.get(message.channel, ()))
        for subscription in subs:
            subscription.deliver(message)
        return len(subs)

    def subscriber_count(self, channel: str | None = None) -> int:
        if channel is not None:
            return len(self._by_channel.get(channel, ()))
        return len({s for subs in self._by_channel.values() for s in subs})

    def close_all(self) -> None:
        for subscription in {s for subs in self._by_channel.values() for s in subs}:
            subscription.close()


@runtime_checkable
class Broker(Protocol):
    """Protocol for broadcast brokers.

    Implementations:
        - InMemoryBroker: single process (development, tests)
        - KafkaBroker: multi-process fan-out through a Kafka topic
    """

    @property
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...

    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            BrokerConnectionError: If connection fails
        """
        ...

    async def close(self) -> None:
        """Close connections and drop local subscriptions."""
        ...

    async def publish(self, channel: str, payload: dict[str, Any]) -> None:
        """Publish a payload on a channel.

        Raises:
            BrokerError: If the payload could not be published
        """
        ...

    def subscribe(self, channels: Iterable[str]) -> Subscription:
        """Create a local subscription for the given channels."""
        ...


def create_broker(config: ServerConfig) -> Broker:
    """Create the broker selected by configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import BrokerBackend

    if config.broadcast.backend == BrokerBackend.MEMORY:
        from .memory import InMemoryBroker

        return InMemoryBroker()
    if config.broadcast.backend == BrokerBackend.KAFKA:
        from .kafka import KafkaBroker

        return KafkaBroker(config.kafka)
    raise ValueError(f"Unsupported broker backend: {config.broadcast.backend}")
