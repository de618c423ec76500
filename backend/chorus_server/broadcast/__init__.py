"""
Broadcast layer: broker abstraction, backends and the dispatcher.
"""

from .base import (
    Broker,
    BrokerConnectionError,
    BrokerError,
    BrokerMessage,
    Subscription,
    channel_name,
    create_broker,
)
from .dispatcher import BroadcastDispatcher, DispatchResult
from .memory import InMemoryBroker

__all__ = [
    "BroadcastDispatcher",
    "Broker",
    "BrokerConnectionError",
    "BrokerError",
    "BrokerMessage",
    "DispatchResult",
    "InMemoryBroker",
    "Subscription",
    "channel_name",
    "create_broker",
]
