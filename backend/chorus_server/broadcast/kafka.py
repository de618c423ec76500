"""
Kafka/Redpanda broker implementation.

All channels share one topic; the channel name is the message key, so every
message of a channel lands on the same partition and keeps its order. Each
server process runs one consumer (no consumer group, latest offset) and
routes received messages to its local subscriptions.

Invariants:
    - Producer uses the configured acks (all by default) and idempotence
    - Only messages published after connect() reach local subscriptions;
      clients catch up on anything older through the harmonic log

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Changing the key scheme breaks per-channel ordering for in-flight data
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError

from ..config import KafkaConfig
from .base import BrokerConnectionError, BrokerError, BrokerMessage, Subscription, SubscriptionHub

logger = logging.getLogger(__name__)


class KafkaBroker:
    """Kafka implementation of the Broker protocol.

    Example:
        >>> broker = KafkaBroker(KafkaConfig(brokers="localhost:9092"))
        >>> await broker.connect()
        >>> await broker.publish("chorus.user.7.todos", {"id": "..."})
    """

    def __init__(self, config: KafkaConfig) -> None:
        self.config = config
        self._hub = SubscriptionHub()
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None
        self._consume_task: asyncio.Task | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._producer is not None

    def _client_config(self) -> dict[str, Any]:
        client_config: dict[str, Any] = {"bootstrap_servers": self.config.brokers}
        if self.config.security_protocol != "PLAINTEXT":
            client_config["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            client_config["sasl_mechanism"] = self.config.sasl_mechanism
            client_config["sasl_plain_username"] = self.config.sasl_username
            client_config["sasl_plain_password"] = self.config.sasl_password
        return client_config

    async def connect(self) -> None:
        """Start the producer and the fan-out consumer.

        Raises:
            BrokerConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                **self._client_config(),
                acks=self.config.acks,
                enable_idempotence=self.config.enable_idempotence,
                linger_ms=5,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
            )
            await self._producer.start()

            self._consumer = AIOKafkaConsumer(
                self.config.topic,
                **self._client_config(),
                group_id=None,
                auto_offset_reset="latest",
                enable_auto_commit=False,
            )
            await self._consumer.start()
        except Exception as e:
            await self.close()
            raise BrokerConnectionError(f"Failed to connect to Kafka: {e}") from e

        self._connected = True
        self._consume_task = asyncio.create_task(self._consume_loop())

        logger.info(
            "Connected to Kafka",
            extra={
                "brokers": self.config.brokers,
                "topic": self.config.topic,
                "acks": self.config.acks,
            },
        )

    async def close(self) -> None:
        if self._consume_task:
            self._consume_task.cancel()
            try:
                await self._consume_task
            except asyncio.CancelledError:
                pass
            self._consume_task = None

        if self._consumer:
            try:
                await self._consumer.stop()
            except Exception as e:
                logger.warning(f"Error closing consumer: {e}")
            self._consumer = None

        if self._producer:
            try:
                await self._producer.stop()
            except Exception as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._hub.close_all()
        self._connected = False
        logger.info("Kafka connections closed")

    async def publish(self, channel: str, payload: dict[str, Any]) -> None:
        """Publish and wait for the broker acknowledgment.

        Raises:
            BrokerConnectionError: If not connected or the connection dropped
            BrokerError: For timeouts and other Kafka errors
        """
        if not self._producer:
            raise BrokerConnectionError("Not connected to Kafka")

        try:
            await self._producer.send_and_wait(
                self.config.topic,
                value=json.dumps(payload).encode("utf-8"),
                key=channel.encode("utf-8"),
            )
        except KafkaTimeoutError as e:
            raise BrokerError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise BrokerConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise BrokerError(f"Kafka send failed: {e}") from e

    def subscribe(self, channels: Iterable[str]) -> Subscription:
        return self._hub.add(channels)

    async def _consume_loop(self) -> None:
        assert self._consumer is not None
        try:
            async for record in self._consumer:
                if record.key is None:
                    continue
                try:
                    payload = json.loads(record.value)
                except (TypeError, ValueError) as e:
                    logger.warning(
                        f"Dropping undecodable broadcast message: {e}",
                        extra={"partition": record.partition, "offset": record.offset},
                    )
                    continue
                self._hub.route(BrokerMessage(channel=record.key.decode("utf-8"), payload=payload))
        except asyncio.CancelledError:
            raise
        except KafkaError as e:
            self._connected = False
            logger.error(f"Kafka consumer stopped: {e}", exc_info=True)

    async def health_check(self) -> bool:
        if not self._producer:
            return False
        try:
            await self._producer.client.fetch_all_metadata()
            return True
        except Exception:
            return False
