"""
Chorus Server - Main entry point.

This module starts the server with all components:
- HTTP API (snapshot, catch-up/long-poll, schema, actions, writes)
- Broadcast dispatcher loop (harmonic log -> broker)
- Retention loop (prunes old harmonics and cached write outcomes)

Usage:
    CHORUS_APP=myapp.sync python -m backend.chorus_server.main

CHORUS_APP names a module exposing configure(services); it tracks the
deployment's tables and registers its write actions. Everything else is
configured via environment variables, see config.py.

Invariants:
    - Tables and actions are registered before the registry is frozen
    - The dispatcher starts before the HTTP server accepts writes
    - Graceful shutdown cancels background loops before closing the broker

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import os
import signal
import sys
import time
from pathlib import Path

import json_log_formatter

from .api import run_http_server
from .config import ServerConfig
from .services import ChorusServices, build_services

logger = logging.getLogger(__name__)

RETENTION_CHECK_SECONDS = 3600


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def load_app(services: ChorusServices, module_path: str | None) -> None:
    """Import the deployment module and let it configure the services.

    Raises:
        ValueError: If the module has no configure() function
    """
    if not module_path:
        logger.warning("CHORUS_APP not set; serving with no tracked tables")
        return
    module = importlib.import_module(module_path)
    configure = getattr(module, "configure", None)
    if not callable(configure):
        raise ValueError(f"CHORUS_APP module {module_path} has no configure(services) function")
    configure(services)
    logger.info(f"Loaded application module {module_path}")


class Server:
    """Chorus Server orchestrator.

    Manages the lifecycle of all server components:
    - Shared SQLite database and broker connection
    - HTTP server
    - Background loops (dispatcher, retention)

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None, app_module: str | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
            app_module: Module exposing configure(services)
        """
        self.config = config or ServerConfig.from_env()
        self.app_module = app_module
        self.services: ChorusServices | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting Chorus server")
        self.config.log_config()

        try:
            Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)

            self.services = build_services(self.config)
            load_app(self.services, self.app_module)
            await self.services.start()

            self._tasks.append(asyncio.create_task(self.services.dispatcher.start()))
            self._tasks.append(
                asyncio.create_task(run_http_server(self.services, self.config.http))
            )
            if self.config.sync.log_retention_hours > 0:
                self._tasks.append(asyncio.create_task(self._retention_loop()))

            self._running = True
            logger.info("Chorus server started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def _retention_loop(self) -> None:
        assert self.services is not None
        retention_ms = int(self.config.sync.log_retention_hours * 3600 * 1000)
        while True:
            cutoff = int(time.time() * 1000) - retention_ms
            try:
                pruned = await self.services.log.prune(cutoff)
                cached = await self.services.gateway.cache.prune(cutoff)
                if pruned or cached:
                    logger.info(
                        "Retention pass complete",
                        extra={"harmonics_pruned": pruned, "requests_pruned": cached},
                    )
            except Exception as e:
                logger.error(f"Retention pass failed: {e}", exc_info=True)
            await asyncio.sleep(RETENTION_CHECK_SECONDS)

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running and not self._tasks:
            return

        logger.info("Stopping Chorus server")

        if self.services:
            await self.services.dispatcher.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.services:
            await self.services.close()

        self._running = False
        logger.info("Chorus server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config, app_module=os.getenv("CHORUS_APP"))

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
