"""
Client settings for the Chorus SDK.

Settings load from keyword arguments first, then CHORUS_CLIENT_* environment
variables, then defaults. The resulting object is passed to SyncClient;
nothing in the SDK reads the environment on its own.

Example:
    >>> settings = ClientSettings(base_url="https://sync.example.com", user_id="7")
    >>> settings.backoff_delay(3)
    2.0
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Connection, storage and retry settings.

    Attributes:
        base_url: Server base URL
        user_id: Identity sent as X-User-ID
        tenant_id: Identity sent as X-Tenant-ID (tenant scope strategy)
        data_dir: Directory of the local replica database
        db_name: Replica database file name
        request_timeout: Per-request timeout in seconds
        max_retries: Transient failures tolerated before a queued write is
            rejected with exhausted_retries
        backoff_base: First retry delay in seconds
        backoff_cap: Upper bound of the retry delay
        long_poll_wait: Seconds the server may hold a live-feed request
        snapshot_chunk_size: Rows applied per chunk during snapshot load
    """

    model_config = SettingsConfigDict(env_prefix="CHORUS_CLIENT_", extra="ignore")

    base_url: str = "http://localhost:8081"
    user_id: str = ""
    tenant_id: str | None = None
    data_dir: str = ".chorus"
    db_name: str = "replica.db"
    request_timeout: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=5, ge=0)
    backoff_base: float = Field(default=0.5, ge=0)
    backoff_cap: float = Field(default=30.0, ge=0)
    long_poll_wait: float = Field(default=25.0, ge=0)
    snapshot_chunk_size: int = Field(default=500, gt=0)

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay before retry number attempt (1-based)."""
        if attempt <= 0:
            return 0.0
        return min(self.backoff_cap, self.backoff_base * (2 ** (attempt - 1)))
