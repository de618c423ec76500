"""
Unit tests for the server entry point.

Tests cover:
- Logging setup
- Loading the application module
- Server start and graceful shutdown
"""

import asyncio
import logging
from dataclasses import replace

import json_log_formatter
import pytest

from backend.chorus_server.config import HttpConfig, ObservabilityConfig, ServerConfig
from backend.chorus_server.main import Server, load_app, setup_logging
from backend.chorus_server.services import build_services


@pytest.fixture
def root_logger():
    """Restore root logger state after the test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_json_format(self, root_logger):
        setup_logging(ServerConfig(observability=ObservabilityConfig(log_level="debug")))

        assert root_logger.level == logging.DEBUG
        assert isinstance(root_logger.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger("aiokafka").level == logging.WARNING

    def test_text_format(self, root_logger):
        setup_logging(ServerConfig(observability=ObservabilityConfig(log_format="text")))

        formatter = root_logger.handlers[0].formatter
        assert not isinstance(formatter, json_log_formatter.JSONFormatter)
        assert root_logger.level == logging.INFO


class TestLoadApp:
    """Tests for load_app."""

    def test_configures_services(self, server_config):
        services = build_services(server_config)
        load_app(services, "tests.support")
        assert services.capture.tables() == ["todos"]
        assert services.registry.get("todos", "import") is not None

    def test_without_module(self, server_config):
        services = build_services(server_config)
        load_app(services, None)
        assert services.capture.tables() == []

    def test_module_without_configure(self, server_config):
        services = build_services(server_config)
        with pytest.raises(ValueError, match="configure"):
            load_app(services, "json")


class TestServer:
    """Tests for the Server lifecycle."""

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, server_config):
        config = replace(server_config, http=HttpConfig(host="127.0.0.1", port=0))
        server = Server(config, app_module="tests.support")

        task = asyncio.create_task(server.start())
        for _ in range(200):
            if server._running:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)

        assert server.services.dispatcher.stats["running"] is True
        assert "todos" in server.services.schema()["schema"]

        server.request_shutdown()
        await asyncio.wait_for(task, timeout=5)
        await server.stop()

        assert server.services.dispatcher.stats["running"] is False
        assert server._tasks == []
