"""
Configuration management for Chorus Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation. The resulting
ServerConfig is passed explicitly to every component that needs it; nothing reads
configuration from a global.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class BrokerBackend(Enum):
    """Supported broadcast broker backends."""

    MEMORY = "memory"
    KAFKA = "kafka"


class ScopeStrategy(Enum):
    """How scope keys are derived from records and identities."""

    NONE = "none"
    STATIC = "static"
    TENANT = "tenant"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for the SQLite database
        db_name: Database file name (records, harmonics and idempotency cache)
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/chorus"
    db_name: str = "chorus.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/chorus"),
            db_name=os.getenv("CHORUS_DB_NAME", "chorus.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, self.db_name)


@dataclass(frozen=True)
class ScopeConfig:
    """Scope resolution configuration.

    Attributes:
        strategy: none (user only), static (fixed prefix) or tenant (per-record tenant)
        prefix: Static prefix used by the static strategy
        user_field: Record field holding the owning user id
        tenant_field: Record field holding the tenant id (tenant strategy)
    """

    strategy: ScopeStrategy = ScopeStrategy.NONE
    prefix: str = ""
    user_field: str = "user_id"
    tenant_field: str = "tenant_id"

    @classmethod
    def from_env(cls) -> ScopeConfig:
        """Load configuration from environment variables."""
        strategy_str = os.getenv("CHORUS_SCOPE_STRATEGY", "none").lower()
        try:
            strategy = ScopeStrategy(strategy_str)
        except ValueError:
            raise ValueError(
                f"Invalid CHORUS_SCOPE_STRATEGY '{strategy_str}'. Must be one of: none, static, tenant"
            )
        return cls(
            strategy=strategy,
            prefix=os.getenv("CHORUS_SCOPE_PREFIX", ""),
            user_field=os.getenv("CHORUS_SCOPE_USER_FIELD", "user_id"),
            tenant_field=os.getenv("CHORUS_SCOPE_TENANT_FIELD", "tenant_id"),
        )


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda broker configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        topic: Topic carrying every broadcast channel (channel name is the message key)
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        acks: Producer acknowledgment level ('all' for strongest durability)
        enable_idempotence: Enable idempotent producer
    """

    brokers: str = "localhost:9092"
    topic: str = "chorus-harmonics"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    acks: str = "all"
    enable_idempotence: bool = True

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            topic=os.getenv("KAFKA_TOPIC", "chorus-harmonics"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=os.getenv("KAFKA_ENABLE_IDEMPOTENCE", "true").lower() == "true",
        )


@dataclass(frozen=True)
class BroadcastConfig:
    """Broadcast dispatcher configuration.

    Attributes:
        backend: Broker backend
        namespace: Fixed namespace prepended to every channel name
        scan_interval_ms: Interval between scans for unprocessed harmonics
        batch_size: Maximum harmonics dispatched per scan
    """

    backend: BrokerBackend = BrokerBackend.MEMORY
    namespace: str = "chorus"
    scan_interval_ms: int = 500
    batch_size: int = 100

    @classmethod
    def from_env(cls) -> BroadcastConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("CHORUS_BROKER", "memory").lower()
        try:
            backend = BrokerBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid CHORUS_BROKER '{backend_str}'. Must be one of: memory, kafka")
        return cls(
            backend=backend,
            namespace=os.getenv("CHORUS_CHANNEL_NAMESPACE", "chorus"),
            scan_interval_ms=int(os.getenv("CHORUS_DISPATCH_INTERVAL_MS", "500")),
            batch_size=int(os.getenv("CHORUS_DISPATCH_BATCH_SIZE", "100")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Snapshot and catch-up endpoint limits.

    Attributes:
        snapshot_limit: Maximum rows in one snapshot response
        changes_page_size: Default page size for incremental fetches
        max_wait_seconds: Upper bound for long-poll waits
        schema_version: Version advertised to clients; bump to force client rebuilds
        log_retention_hours: Age after which broadcast harmonics and cached
            write outcomes are pruned (0 keeps them forever)
    """

    snapshot_limit: int = 10000
    changes_page_size: int = 500
    max_wait_seconds: float = 30.0
    schema_version: str = "1"
    log_retention_hours: float = 0.0

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        return cls(
            snapshot_limit=int(os.getenv("CHORUS_SNAPSHOT_LIMIT", "10000")),
            changes_page_size=int(os.getenv("CHORUS_CHANGES_PAGE_SIZE", "500")),
            max_wait_seconds=float(os.getenv("CHORUS_MAX_WAIT_SECONDS", "30")),
            schema_version=os.getenv("CHORUS_SCHEMA_VERSION", "1"),
            log_retention_hours=float(os.getenv("CHORUS_LOG_RETENTION_HOURS", "0")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8081
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("HTTP_CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8081")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    scope: ScopeConfig = field(default_factory=ScopeConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            scope=ScopeConfig.from_env(),
            broadcast=BroadcastConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            sync=SyncConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.broadcast.namespace:
            raise ValueError("CHORUS_CHANNEL_NAMESPACE must not be empty")
        if "." in self.broadcast.namespace:
            raise ValueError("CHORUS_CHANNEL_NAMESPACE must not contain '.'")

        if self.broadcast.backend == BrokerBackend.KAFKA:
            if not self.kafka.brokers:
                raise ValueError("KAFKA_BROKERS is required when CHORUS_BROKER=kafka")
            if not self.kafka.topic:
                raise ValueError("KAFKA_TOPIC is required when CHORUS_BROKER=kafka")

        if self.scope.strategy == ScopeStrategy.STATIC and not self.scope.prefix:
            raise ValueError("CHORUS_SCOPE_PREFIX is required when CHORUS_SCOPE_STRATEGY=static")

        if self.broadcast.batch_size <= 0:
            raise ValueError("CHORUS_DISPATCH_BATCH_SIZE must be positive")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "broker": self.broadcast.backend.value,
                "namespace": self.broadcast.namespace,
                "scope_strategy": self.scope.strategy.value,
                "kafka_brokers": self.kafka.brokers
                if self.broadcast.backend == BrokerBackend.KAFKA
                else None,
                "http_port": self.http.port,
                "schema_version": self.sync.schema_version,
                "log_level": self.observability.log_level,
            },
        )
