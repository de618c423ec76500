"""
Shared fixtures for Chorus tests.

Server fixtures build the full component graph on a temporary SQLite file
with the in-memory broker and the todos table from tests.support.
"""

import tempfile

import pytest

from backend.chorus_server.broadcast import InMemoryBroker
from backend.chorus_server.config import (
    BroadcastConfig,
    ServerConfig,
    StorageConfig,
    SyncConfig,
)
from backend.chorus_server.services import build_services

from .support import configure_todos


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def server_config(data_dir):
    """Server configuration on the temp directory with fast loops."""
    return ServerConfig(
        storage=StorageConfig(data_dir=data_dir, wal_mode=False),
        broadcast=BroadcastConfig(scan_interval_ms=20),
        sync=SyncConfig(max_wait_seconds=2.0),
    )


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
async def services(server_config, broker):
    """Started services with the todos table configured."""
    services = build_services(server_config, broker=broker)
    configure_todos(services)
    await services.start()
    yield services
    await services.close()
