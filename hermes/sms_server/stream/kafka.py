"""
Kafka stream backend.

Works with Apache Kafka, Amazon MSK, Redpanda or any Kafka API-compatible
system. The upstream CDC connector writes the customer, preference and
notification topics; this service writes the retry topic itself.

Invariants:
    - Producer uses acks=all so a published retry record is durable
    - Consumers never auto-commit; offsets move only through commit()
    - A LATEST consumer seeks to the end on its first partition assignment
      after start(), so it never replays history even with committed
      offsets present; later rebalances resume from the committed offset

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Keep consumer settings in sync between KafkaConfig and consumer()
"""

from __future__ import annotations

import logging
import time
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, ConsumerRebalanceListener
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from .base import (
    StartPosition,
    StreamConnectionError,
    StreamError,
    StreamPos,
    StreamRecord,
    StreamTimeoutError,
)

logger = logging.getLogger(__name__)


def _security_settings(config: Any) -> dict[str, Any]:
    """Connection security settings shared by producer and consumers."""
    settings: dict[str, Any] = {}

    if config.security_protocol != "PLAINTEXT":
        settings["security_protocol"] = config.security_protocol

    if config.sasl_mechanism:
        settings["sasl_mechanism"] = config.sasl_mechanism
        settings["sasl_plain_username"] = config.sasl_username
        settings["sasl_plain_password"] = config.sasl_password

    if config.ssl_cafile:
        settings["ssl_cafile"] = config.ssl_cafile

    return settings


class _SeekToEndOnAssign(ConsumerRebalanceListener):
    """Skips history on the first assignment after a LATEST consumer starts.

    Later rebalances resume from the committed position so records published
    while the group was rebalancing are still delivered.
    """

    def __init__(self, consumer: AIOKafkaConsumer, topic: str) -> None:
        self._consumer = consumer
        self._topic = topic
        self._skipped = False

    async def on_partitions_revoked(self, revoked) -> None:
        pass

    async def on_partitions_assigned(self, assigned) -> None:
        if self._skipped:
            return
        self._skipped = True

        if assigned:
            await self._consumer.seek_to_end(*assigned)
            logger.info(
                "Skipped stream history",
                extra={"topic": self._topic, "partitions": sorted(tp.partition for tp in assigned)},
            )


class KafkaStreamConsumer:
    """Kafka implementation of the StreamConsumer protocol.

    One instance consumes exactly one topic as a member of the shared
    consumer group.
    """

    def __init__(
        self,
        config: Any,
        topic: str,
        group_id: str,
        start: StartPosition = StartPosition.EARLIEST,
    ) -> None:
        self.config = config
        self.topic = topic
        self.group_id = group_id
        self.start_position = start
        self._consumer: AIOKafkaConsumer | None = None

    async def start(self) -> None:
        """Join the consumer group.

        Raises:
            StreamConnectionError: If the consumer cannot connect
        """
        consumer = AIOKafkaConsumer(
            bootstrap_servers=self.config.brokers,
            group_id=self.group_id,
            auto_offset_reset=self.start_position.value,
            enable_auto_commit=False,
            fetch_min_bytes=self.config.fetch_min_bytes,
            fetch_max_bytes=self.config.fetch_max_bytes,
            session_timeout_ms=30000,
            heartbeat_interval_ms=10000,
            **_security_settings(self.config),
        )

        if self.start_position == StartPosition.LATEST:
            consumer.subscribe([self.topic], listener=_SeekToEndOnAssign(consumer, self.topic))
        else:
            consumer.subscribe([self.topic])

        try:
            await consumer.start()
        except KafkaError as e:
            raise StreamConnectionError(f"Failed to subscribe to {self.topic}: {e}") from e

        self._consumer = consumer
        logger.info(
            "Subscribed to Kafka topic",
            extra={
                "topic": self.topic,
                "group_id": self.group_id,
                "start": self.start_position.value,
            },
        )

    async def stop(self) -> None:
        """Leave the group and close the fetcher."""
        if self._consumer:
            try:
                await self._consumer.stop()
            except Exception as e:
                logger.warning(f"Error closing consumer for {self.topic}: {e}")
            self._consumer = None

    async def fetch(self) -> StreamRecord:
        """Fetch the next record, waiting until one is available.

        Raises:
            StreamConnectionError: If not started or the broker is unreachable
            StreamError: For other Kafka errors
        """
        if not self._consumer:
            raise StreamConnectionError(f"Consumer for {self.topic} is not started")

        try:
            msg = await self._consumer.getone()
        except KafkaConnectionError as e:
            raise StreamConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise StreamError(f"Kafka fetch failed: {e}") from e

        return StreamRecord(
            key=msg.key.decode("utf-8") if msg.key else "",
            value=msg.value or b"",
            position=StreamPos(
                topic=msg.topic,
                partition=msg.partition,
                offset=msg.offset,
                timestamp_ms=msg.timestamp or int(time.time() * 1000),
            ),
            headers=dict(msg.headers) if msg.headers else {},
        )

    async def commit(self, record: StreamRecord) -> None:
        """Commit the record's offset for the group.

        Raises:
            StreamError: If commit fails
        """
        if not self._consumer:
            raise StreamError(f"No active consumer to commit {record.position}")

        try:
            # Kafka stores the next offset to consume
            await self._consumer.commit(
                {
                    TopicPartition(record.position.topic, record.position.partition): OffsetAndMetadata(
                        record.position.offset + 1, ""
                    )
                }
            )
        except KafkaError as e:
            raise StreamError(f"Failed to commit {record.position}: {e}") from e

        logger.debug("Committed offset", extra=record.position.to_dict())

    async def seek(self, position: StreamPos) -> None:
        """Rewind the partition so the record at position is fetched again."""
        if not self._consumer:
            raise StreamError(f"No active consumer to seek {position}")

        partition = TopicPartition(position.topic, position.partition)
        if partition not in self._consumer.assignment():
            # the next owner resumes from the committed offset
            logger.info("Partition no longer assigned, skipping seek", extra=position.to_dict())
            return

        try:
            self._consumer.seek(partition, position.offset)
        except KafkaError as e:
            raise StreamError(f"Failed to seek to {position}: {e}") from e


class KafkaStreamBackend:
    """Kafka implementation of the StreamBackend protocol.

    Uses aiokafka for async producer/consumer operations.

    Example:
        >>> backend = KafkaStreamBackend(KafkaConfig(brokers="localhost:29092"))
        >>> await backend.connect()
        >>> pos = await backend.append("hermes.sms.retry-queue", b'{"text": "Hi"}')
    """

    def __init__(self, config: Any) -> None:
        """Initialize the backend.

        Args:
            config: KafkaConfig instance with connection settings
        """
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether the producer is connected."""
        return self._connected and self._producer is not None

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            StreamConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.brokers,
                acks=self.config.acks,
                enable_idempotence=self.config.enable_idempotence,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
                **_security_settings(self.config),
            )
            await self._producer.start()
            self._connected = True

            logger.info(
                "Connected to Kafka",
                extra={"brokers": self.config.brokers, "acks": self.config.acks},
            )

        except Exception as e:
            self._connected = False
            self._producer = None
            raise StreamConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Flush pending writes and stop the producer."""
        if self._producer:
            try:
                await self._producer.stop()
            except Exception as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka producer closed")

    async def append(
        self,
        topic: str,
        value: bytes,
        key: str | None = None,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Append a record and wait for the broker acknowledgment.

        Raises:
            StreamConnectionError: If not connected
            StreamTimeoutError: If send times out
            StreamError: For other Kafka errors
        """
        if not self._producer:
            raise StreamConnectionError("Not connected to Kafka")

        try:
            record_metadata = await self._producer.send_and_wait(
                topic,
                value=value,
                key=key.encode("utf-8") if key else None,
                headers=list(headers.items()) if headers else None,
            )
        except KafkaTimeoutError as e:
            raise StreamTimeoutError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise StreamConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise StreamError(f"Kafka send failed: {e}") from e

        pos = StreamPos(
            topic=record_metadata.topic,
            partition=record_metadata.partition,
            offset=record_metadata.offset,
            timestamp_ms=record_metadata.timestamp or int(time.time() * 1000),
        )
        logger.debug("Record appended to Kafka", extra=pos.to_dict())
        return pos

    def consumer(
        self,
        topic: str,
        group_id: str,
        start: StartPosition = StartPosition.EARLIEST,
    ) -> KafkaStreamConsumer:
        """Create a consumer for one topic."""
        return KafkaStreamConsumer(self.config, topic, group_id, start)
