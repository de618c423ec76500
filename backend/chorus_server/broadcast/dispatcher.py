"""
Broadcast dispatcher: publishes unprocessed harmonics to scoped channels.

The dispatcher scans the harmonic log for entries with processed_at NULL,
publishes each on its channel, then marks it processed with a conditional
update. It runs as a background loop woken by new commits and by a periodic
timer, so entries left behind by a crash or a failed publish are picked up
on the next scan.

Invariants:
    - An entry is marked processed only after a successful publish
    - At most one mark_processed() succeeds per entry, whatever the number
      of dispatcher instances
    - A scan stops at the first publish failure so later entries are not
      published ahead of it

How to change safely:
    - Keep publish-before-mark ordering; reversing it can lose broadcasts
    - Consumers tolerate duplicates (idempotent apply) but not silent loss
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from ..capture.harmonic import Harmonic
from ..capture.log import HarmonicLog
from ..config import BroadcastConfig
from .base import Broker, BrokerError, channel_name

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """Outcome of one scan.

    Attributes:
        published: Entries published and marked by this dispatcher
        already_processed: Entries published but marked by someone else first
        failed: Publish failures (scan stopped at the first one)
    """

    published: int = 0
    already_processed: int = 0
    failed: int = 0


class BroadcastDispatcher:
    """Publishes harmonics from the log to the broker.

    Example:
        >>> dispatcher = BroadcastDispatcher(log, broker, config.broadcast)
        >>> log.add_listener(dispatcher.notify)
        >>> task = asyncio.create_task(dispatcher.start())
    """

    def __init__(self, log: HarmonicLog, broker: Broker, config: BroadcastConfig) -> None:
        self.log = log
        self.broker = broker
        self.namespace = config.namespace
        self.batch_size = config.batch_size
        self.scan_interval = config.scan_interval_ms / 1000.0

        self._running = False
        self._wake = asyncio.Event()
        self._scan_lock = asyncio.Lock()
        self._published_count = 0
        self._failure_count = 0

    def channel_for(self, entry: Harmonic) -> str:
        return channel_name(self.namespace, entry.scope_key, entry.table)

    def notify(self, entry: Harmonic | None = None) -> None:
        """Wake the loop; registered as a harmonic log listener."""
        self._wake.set()

    async def dispatch_pending(self) -> DispatchResult:
        """Publish one batch of unprocessed entries in id order."""
        result = DispatchResult()
        async with self._scan_lock:
            entries = await self.log.unprocessed(limit=self.batch_size)
            for entry in entries:
                channel = self.channel_for(entry)
                message = entry.to_wire(previous_id=await self.log.previous_id(entry))
                try:
                    await self.broker.publish(channel, message)
                except BrokerError as e:
                    result.failed += 1
                    self._failure_count += 1
                    logger.warning(
                        "Publish failed, entry left for next scan",
                        extra={"harmonic_id": entry.id, "channel": channel, "error": str(e)},
                    )
                    break

                if await self.log.mark_processed(entry.id):
                    result.published += 1
                    self._published_count += 1
                else:
                    result.already_processed += 1
                    logger.debug(
                        "Entry already marked by another dispatcher",
                        extra={"harmonic_id": entry.id},
                    )

        if result.published:
            logger.debug(
                "Dispatched harmonics",
                extra={"published": result.published, "failed": result.failed},
            )
        return result

    async def start(self) -> None:
        """Run the dispatch loop until stop() is called."""
        if self._running:
            logger.warning("Dispatcher already running")
            return

        self._running = True
        logger.info(
            "Starting broadcast dispatcher",
            extra={"namespace": self.namespace, "scan_interval_s": self.scan_interval},
        )

        try:
            while self._running:
                self._wake.clear()
                result = await self.dispatch_pending()
                if result.published + result.already_processed >= self.batch_size and not result.failed:
                    continue
                try:
                    await asyncio.wait_for(self._wake.wait(), self.scan_interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Dispatcher cancelled")
        except Exception as e:
            logger.error(f"Dispatcher error: {e}", exc_info=True)
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        self._wake.set()
        logger.info("Stopping broadcast dispatcher")

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "published_count": self._published_count,
            "failure_count": self._failure_count,
        }
