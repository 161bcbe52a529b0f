"""
Base protocol and types for the change-stream abstraction.

This module defines the StreamBackend and StreamConsumer protocols that all
backends must implement, along with common types for stream positions,
records, and errors.

Invariants:
    - StreamPos uniquely identifies a record in the stream
    - A consumer only advances its committed position through commit()
    - Records within a partition are fetched in log order

How to change safely:
    - Protocol changes require updating every backend (kafka, memory)
    - Keep StreamRecord immutable in spirit: the dispatcher echoes the
      exact record it received back to the owning reader
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServiceConfig

logger = logging.getLogger(__name__)


class StreamError(Exception):
    """Base exception for stream operations."""
    pass


class StreamConnectionError(StreamError):
    """Connection to the stream backend failed."""
    pass


class StreamTimeoutError(StreamError):
    """Stream operation timed out."""
    pass


class StreamSerializationError(StreamError):
    """Failed to deserialize a stream record."""
    pass


class StartPosition(Enum):
    """Where a consumer starts reading when it joins a stream.

    EARLIEST replays the full history (resuming from committed positions).
    LATEST ignores history entirely and only sees records appended after
    partitions are assigned.
    """

    EARLIEST = "earliest"
    LATEST = "latest"


@dataclass(frozen=True)
class StreamPos:
    """Position of a record in a stream.

    Attributes:
        topic: Topic/stream name
        partition: Partition number
        offset: Offset within partition
        timestamp_ms: Timestamp when the record was written (milliseconds)
    """
    topic: str
    partition: int
    offset: int
    timestamp_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
        }

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class StreamRecord:
    """A record fetched from a stream.

    The record doubles as the commit handle: committing it marks its
    position (and everything before it in the partition) as handled.

    Attributes:
        key: Partition key (may be empty)
        value: Record payload (UTF-8 JSON for every stream this service reads)
        position: Position in the stream
        headers: Optional headers/metadata
    """
    key: str
    value: bytes
    position: StreamPos
    headers: Dict[str, bytes] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        """Whether the record carries no payload (e.g. a compaction tombstone)."""
        return not self.value

    def value_json(self) -> Any:
        """Parse value as JSON.

        Raises:
            StreamSerializationError: If value is not valid JSON
        """
        try:
            return json.loads(self.value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StreamSerializationError(f"Failed to parse record value as JSON: {e}")

    def __str__(self) -> str:
        return f"StreamRecord(key={self.key}, pos={self.position})"


@runtime_checkable
class StreamConsumer(Protocol):
    """A single consumer-group member reading one topic.

    Delivery contract:
        - fetch() returns the next record at-or-after the current position
          and blocks until one is available
        - the current position advances on fetch, the committed position
          only on commit()
        - seek() moves the current position back to re-read a record
    """

    @abstractmethod
    async def start(self) -> None:
        """Join the consumer group and begin fetching.

        Raises:
            StreamConnectionError: If the consumer cannot connect
        """
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Leave the consumer group and release fetch resources."""
        ...

    @abstractmethod
    async def fetch(self) -> StreamRecord:
        """Fetch the next record.

        Raises:
            StreamError: On transient fetch failures
        """
        ...

    @abstractmethod
    async def commit(self, record: StreamRecord) -> None:
        """Durably mark the record as handled.

        Raises:
            StreamError: If commit fails
        """
        ...

    @abstractmethod
    async def seek(self, position: StreamPos) -> None:
        """Move the fetch position of a partition to the given offset."""
        ...


@runtime_checkable
class StreamBackend(Protocol):
    """Protocol for stream backends.

    A backend owns the producer side (append) and hands out consumers,
    one per topic.

    Example:
        >>> backend = KafkaStreamBackend(config.kafka)
        >>> await backend.connect()
        >>> consumer = backend.consumer("hermes.sms.retry-queue", "hermes-sms-svc")
        >>> await consumer.start()
        >>> record = await consumer.fetch()
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect the producer side.

        Raises:
            StreamConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush pending writes and release resources."""
        ...

    @abstractmethod
    async def append(
        self,
        topic: str,
        value: bytes,
        key: Optional[str] = None,
        headers: Optional[Dict[str, bytes]] = None,
    ) -> StreamPos:
        """Append a record and wait for acknowledgment.

        Raises:
            StreamConnectionError: If not connected
            StreamTimeoutError: If the write times out
            StreamError: For other write failures
        """
        ...

    @abstractmethod
    def consumer(
        self,
        topic: str,
        group_id: str,
        start: StartPosition = StartPosition.EARLIEST,
    ) -> StreamConsumer:
        """Create a consumer for one topic (not yet started)."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the producer side is connected."""
        ...


def create_stream_backend(config: "ServiceConfig") -> StreamBackend:
    """Create a stream backend from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StreamBackendKind
    from .kafka import KafkaStreamBackend
    from .memory import InMemoryStreamBackend

    if config.stream_backend == StreamBackendKind.KAFKA:
        return KafkaStreamBackend(config.kafka)
    elif config.stream_backend == StreamBackendKind.MEMORY:
        return InMemoryStreamBackend()
    else:
        raise ValueError(f"Unsupported stream backend: {config.stream_backend}")
