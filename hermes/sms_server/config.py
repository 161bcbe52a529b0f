"""
Configuration management for the Hermes SMS service.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for brokers, region
      and credentials
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Document new variables in the module docstring of the owning class
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from enum import Enum

from .apply.events import StreamKind
from .stream.base import StartPosition

logger = logging.getLogger(__name__)

DEFAULT_SMS_CHANNEL_TYPE_ID = "5cbd9281-f056-48de-80f5-0e4f0d882ce8"


class StreamBackendKind(Enum):
    """Supported stream backends."""

    KAFKA = "kafka"
    MEMORY = "memory"


class SmsBackend(Enum):
    """Supported SMS transports."""

    SNS = "sns"
    MEMORY = "memory"


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda backend configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        consumer_group: Consumer group shared by every stream reader
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        fetch_min_bytes: Minimum bytes the broker gathers before answering a fetch
        fetch_max_bytes: Maximum bytes returned by one fetch
        acks: Producer acknowledgment level for retry records
        enable_idempotence: Enable idempotent producer
    """

    brokers: str = "localhost:29092"
    consumer_group: str = "hermes-sms-svc"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    fetch_min_bytes: int = 100
    fetch_max_bytes: int = 10_000_000
    acks: str = "all"
    enable_idempotence: bool = True

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:29092"),
            consumer_group=os.getenv("KAFKA_CONSUMER_GROUP", "hermes-sms-svc"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            fetch_min_bytes=int(os.getenv("KAFKA_FETCH_MIN_BYTES", "100")),
            fetch_max_bytes=int(os.getenv("KAFKA_FETCH_MAX_BYTES", "10000000")),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=os.getenv("KAFKA_ENABLE_IDEMPOTENCE", "true").lower() == "true",
        )


@dataclass(frozen=True)
class TopicConfig:
    """Topic names of the consumed streams and the retry queue.

    Attributes:
        customers: CDC topic of the upstream customers table
        preferences: CDC topic of the upstream customer notification channels
        notifications: CDC topic of the upstream notifications table
        retry: Retry queue written and read by this service
    """

    customers: str = "hermes.public.customers"
    preferences: str = "hermes.public.customer_notification_channels"
    notifications: str = "hermes.public.notifications"
    retry: str = "hermes.sms.retry-queue"

    @classmethod
    def from_env(cls) -> TopicConfig:
        """Load configuration from environment variables."""
        return cls(
            customers=os.getenv("CUSTOMERS_TOPIC", "hermes.public.customers"),
            preferences=os.getenv(
                "PREFERENCES_TOPIC", "hermes.public.customer_notification_channels"
            ),
            notifications=os.getenv("NOTIFICATIONS_TOPIC", "hermes.public.notifications"),
            retry=os.getenv("RETRY_TOPIC", "hermes.sms.retry-queue"),
        )

    def topic_for(self, kind: StreamKind) -> str:
        return {
            StreamKind.CUSTOMERS: self.customers,
            StreamKind.PREFERENCES: self.preferences,
            StreamKind.NOTIFICATIONS: self.notifications,
            StreamKind.RETRY: self.retry,
        }[kind]

    @staticmethod
    def start_for(kind: StreamKind) -> StartPosition:
        """Notifications are only of interest while the service is running."""
        if kind == StreamKind.NOTIFICATIONS:
            return StartPosition.LATEST
        return StartPosition.EARLIEST


@dataclass(frozen=True)
class StorageConfig:
    """Customer store configuration.

    Attributes:
        db_path: SQLite database file
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    db_path: str = "/var/lib/hermes/customers.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("DB_PATH", "/var/lib/hermes/customers.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class SmsConfig:
    """SMS transport configuration.

    Attributes:
        region: AWS region of the SNS endpoint
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
        sender: Sender ID shown to recipients where supported
        endpoint_url: Custom endpoint URL (for LocalStack testing)
        channel_type_id: Notification channel type identifying SMS preferences
    """

    region: str = "us-east-1"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    sender: str | None = None
    endpoint_url: str | None = None
    channel_type_id: str = DEFAULT_SMS_CHANNEL_TYPE_ID

    @classmethod
    def from_env(cls) -> SmsConfig:
        """Load configuration from environment variables."""
        return cls(
            region=os.getenv("SMS_REGION", os.getenv("AWS_REGION", "us-east-1")),
            access_key_id=os.getenv("SMS_ACCESS_KEY"),
            secret_access_key=os.getenv("SMS_SECRET_ACCESS_KEY"),
            sender=os.getenv("SMS_SENDER") or None,
            endpoint_url=os.getenv("SMS_ENDPOINT_URL"),
            channel_type_id=os.getenv("SMS_CHANNEL_TYPE_ID", DEFAULT_SMS_CHANNEL_TYPE_ID),
        )

    @property
    def channel_type_uuid(self) -> uuid.UUID:
        return uuid.UUID(self.channel_type_id)


@dataclass(frozen=True)
class FanoutConfig:
    """Notification fan-out configuration.

    Attributes:
        send_interval_seconds: Pause between two dispatched sends
        max_concurrent_sends: Maximum sends in flight at once
    """

    send_interval_seconds: float = 1.0
    max_concurrent_sends: int = 16

    @classmethod
    def from_env(cls) -> FanoutConfig:
        """Load configuration from environment variables."""
        return cls(
            send_interval_seconds=float(os.getenv("FANOUT_SEND_INTERVAL_SECONDS", "1.0")),
            max_concurrent_sends=int(os.getenv("FANOUT_MAX_CONCURRENT_SENDS", "16")),
        )


@dataclass(frozen=True)
class ReaderConfig:
    """Stream reader configuration.

    Attributes:
        retry_delay_ms: Delay before retrying a failed fetch or re-fetching
            an unacknowledged record
    """

    retry_delay_ms: int = 1000

    @classmethod
    def from_env(cls) -> ReaderConfig:
        """Load configuration from environment variables."""
        return cls(retry_delay_ms=int(os.getenv("READER_RETRY_DELAY_MS", "1000")))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

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
class ServiceConfig:
    """Complete service configuration.

    Attributes:
        stream_backend: Which stream backend to use
        sms_backend: Which SMS transport to use
        kafka: Kafka configuration (if stream_backend is KAFKA)
        topics: Topic names
        storage: Customer store configuration
        sms: SMS transport configuration
        fanout: Fan-out configuration
        reader: Stream reader configuration
        observability: Logging configuration
    """

    stream_backend: StreamBackendKind = StreamBackendKind.KAFKA
    sms_backend: SmsBackend = SmsBackend.SNS
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    topics: TopicConfig = field(default_factory=TopicConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sms: SmsConfig = field(default_factory=SmsConfig)
    fanout: FanoutConfig = field(default_factory=FanoutConfig)
    reader: ReaderConfig = field(default_factory=ReaderConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("STREAM_BACKEND", "kafka").lower()
        try:
            stream_backend = StreamBackendKind(backend_str)
        except ValueError:
            raise ValueError(f"Invalid STREAM_BACKEND '{backend_str}'. Must be one of: kafka, memory")

        sms_str = os.getenv("SMS_BACKEND", "sns").lower()
        try:
            sms_backend = SmsBackend(sms_str)
        except ValueError:
            raise ValueError(f"Invalid SMS_BACKEND '{sms_str}'. Must be one of: sns, memory")

        config = cls(
            stream_backend=stream_backend,
            sms_backend=sms_backend,
            kafka=KafkaConfig.from_env(),
            topics=TopicConfig.from_env(),
            storage=StorageConfig.from_env(),
            sms=SmsConfig.from_env(),
            fanout=FanoutConfig.from_env(),
            reader=ReaderConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.stream_backend == StreamBackendKind.KAFKA:
            if not self.kafka.brokers:
                raise ValueError("KAFKA_BROKERS is required when STREAM_BACKEND=kafka")
            if not self.kafka.consumer_group:
                raise ValueError("KAFKA_CONSUMER_GROUP is required when STREAM_BACKEND=kafka")

        if self.sms_backend == SmsBackend.SNS and not self.sms.region:
            raise ValueError("SMS_REGION is required when SMS_BACKEND=sns")

        try:
            self.sms.channel_type_uuid
        except ValueError:
            raise ValueError(f"SMS_CHANNEL_TYPE_ID must be a UUID, got '{self.sms.channel_type_id}'")

        topics = [self.topics.topic_for(kind) for kind in StreamKind]
        if not all(topics):
            raise ValueError("Topic names must not be empty")
        if len(set(topics)) != len(topics):
            raise ValueError(f"Topic names must be distinct: {topics}")

        if self.fanout.send_interval_seconds < 0:
            raise ValueError("FANOUT_SEND_INTERVAL_SECONDS must not be negative")
        if self.fanout.max_concurrent_sends < 1:
            raise ValueError("FANOUT_MAX_CONCURRENT_SENDS must be at least 1")

        if not os.path.exists(os.path.dirname(self.storage.db_path) or "."):
            logger.warning(
                f"Database directory does not exist: {self.storage.db_path}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Service configuration loaded",
            extra={
                "stream_backend": self.stream_backend.value,
                "sms_backend": self.sms_backend.value,
                "kafka_brokers": self.kafka.brokers
                if self.stream_backend == StreamBackendKind.KAFKA
                else None,
                "consumer_group": self.kafka.consumer_group,
                "topics": [self.topics.topic_for(kind) for kind in StreamKind],
                "db_path": self.storage.db_path,
                "sms_region": self.sms.region,
                "sms_sender": self.sms.sender,
                "sms_credentials": "set" if self.sms.access_key_id else "default chain",
                "send_interval_seconds": self.fanout.send_interval_seconds,
                "log_level": self.observability.log_level,
            },
        )
