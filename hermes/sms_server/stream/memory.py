"""
In-memory stream backend for testing.

This module provides a simple in-memory stream backend for:
- Unit tests
- Integration tests
- Local development without a Kafka cluster

Invariants:
    - All data is lost on process exit
    - Provides the same per-partition ordering as the Kafka backend
    - Committed positions are tracked per (group, topic, partition) and
      survive consumer restarts within the same backend instance

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep behaviour compatible with the StreamConsumer protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .base import (
    StartPosition,
    StreamConnectionError,
    StreamError,
    StreamPos,
    StreamRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""
    records: List[StreamRecord] = field(default_factory=list)


class InMemoryStreamConsumer:
    """In-memory implementation of the StreamConsumer protocol."""

    def __init__(
        self,
        backend: InMemoryStreamBackend,
        topic: str,
        group_id: str,
        start: StartPosition = StartPosition.EARLIEST,
    ) -> None:
        self.backend = backend
        self.topic = topic
        self.group_id = group_id
        self.start_position = start
        self._positions: Dict[int, int] = {}
        self._started = False

    async def start(self) -> None:
        """Resolve starting positions from committed offsets or the log end."""
        if not self.backend.is_connected:
            raise StreamConnectionError("Not connected")

        committed = self.backend._committed[(self.group_id, self.topic)]
        for partition, part in self.backend._partitions(self.topic).items():
            if self.start_position == StartPosition.LATEST:
                self._positions[partition] = len(part.records)
            else:
                self._positions[partition] = committed.get(partition, 0)

        self._started = True
        logger.debug(
            "InMemoryStreamConsumer started",
            extra={"topic": self.topic, "group_id": self.group_id},
        )

    async def stop(self) -> None:
        self._started = False

    async def fetch(self) -> StreamRecord:
        """Return the next record, waiting for an append if none is pending."""
        if not self._started:
            raise StreamConnectionError(f"Consumer for {self.topic} is not started")

        failures = self.backend._fetch_failures.get(self.topic)
        if failures:
            raise failures.pop(0)

        async with self.backend._appended:
            await self.backend._appended.wait_for(self._has_pending)
            return self._take_next()

    async def commit(self, record: StreamRecord) -> None:
        if not self._started:
            raise StreamError(f"No active consumer to commit {record.position}")

        committed = self.backend._committed[(self.group_id, record.position.topic)]
        committed[record.position.partition] = record.position.offset + 1
        self.backend.commit_log.append((self.group_id, record.position))

    async def seek(self, position: StreamPos) -> None:
        self._positions[position.partition] = position.offset

    def _has_pending(self) -> bool:
        for partition, part in self.backend._partitions(self.topic).items():
            if self._positions.get(partition, 0) < len(part.records):
                return True
        return False

    def _take_next(self) -> StreamRecord:
        for partition, part in sorted(self.backend._partitions(self.topic).items()):
            offset = self._positions.get(partition, 0)
            if offset < len(part.records):
                self._positions[partition] = offset + 1
                return part.records[offset]
        raise StreamError(f"No pending record on {self.topic}")


class InMemoryStreamBackend:
    """In-memory implementation of the StreamBackend protocol.

    Example:
        >>> backend = InMemoryStreamBackend()
        >>> await backend.connect()
        >>> await backend.append("customers", b'{"after": {"id": "..."}}')
        >>> consumer = backend.consumer("customers", "hermes-sms-svc")
        >>> await consumer.start()
        >>> record = await consumer.fetch()
    """

    def __init__(self, num_partitions: int = 1) -> None:
        """Initialize the backend.

        Args:
            num_partitions: Number of partitions per topic
        """
        self.num_partitions = num_partitions
        self._topics: Dict[str, Dict[int, InMemoryPartition]] = {}
        self._committed: Dict[Tuple[str, str], Dict[int, int]] = defaultdict(dict)
        self._fetch_failures: Dict[str, List[Exception]] = defaultdict(list)
        self._append_failures: List[Exception] = []
        self._appended = asyncio.Condition()
        self._connected = False
        self.commit_log: List[Tuple[str, StreamPos]] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryStreamBackend connected")

    async def close(self) -> None:
        self._connected = False
        logger.debug("InMemoryStreamBackend closed")

    async def append(
        self,
        topic: str,
        value: bytes,
        key: Optional[str] = None,
        headers: Optional[Dict[str, bytes]] = None,
    ) -> StreamPos:
        """Append a record to the in-memory log."""
        if not self._connected:
            raise StreamConnectionError("Not connected")

        if self._append_failures:
            raise self._append_failures.pop(0)

        partition = self._partition_for_key(key or "")

        async with self._appended:
            part = self._partitions(topic)[partition]
            pos = StreamPos(
                topic=topic,
                partition=partition,
                offset=len(part.records),
                timestamp_ms=int(time.time() * 1000),
            )
            part.records.append(
                StreamRecord(key=key or "", value=value, position=pos, headers=headers or {})
            )
            self._appended.notify_all()

        logger.debug("Record appended to in-memory stream", extra=pos.to_dict())
        return pos

    def consumer(
        self,
        topic: str,
        group_id: str,
        start: StartPosition = StartPosition.EARLIEST,
    ) -> InMemoryStreamConsumer:
        return InMemoryStreamConsumer(self, topic, group_id, start)

    def _partitions(self, topic: str) -> Dict[int, InMemoryPartition]:
        if topic not in self._topics:
            self._topics[topic] = {i: InMemoryPartition() for i in range(self.num_partitions)}
        return self._topics[topic]

    def _partition_for_key(self, key: str) -> int:
        """Get partition number for a key using consistent hashing."""
        hash_bytes = hashlib.md5(key.encode("utf-8")).digest()
        return int.from_bytes(hash_bytes[:4], "big") % self.num_partitions

    # Testing helpers

    def get_all_records(self, topic: str) -> List[StreamRecord]:
        """Get all records for a topic across partitions (testing helper)."""
        records: List[StreamRecord] = []
        for partition in sorted(self._partitions(topic)):
            records.extend(self._partitions(topic)[partition].records)
        return records

    def get_record_count(self, topic: str) -> int:
        """Get total record count for a topic (testing helper)."""
        return sum(len(part.records) for part in self._partitions(topic).values())

    def committed_offset(self, topic: str, group_id: str, partition: int = 0) -> int:
        """Next offset the group will consume after a restart (testing helper)."""
        return self._committed[(group_id, topic)].get(partition, 0)

    def inject_fetch_failure(self, topic: str, exception: Exception) -> None:
        """Make the next fetch on topic raise exception (testing helper)."""
        self._fetch_failures[topic].append(exception)

    def inject_append_failure(self, exception: Exception) -> None:
        """Make the next append raise exception (testing helper)."""
        self._append_failures.append(exception)

    async def wait_for_records(self, topic: str, count: int, timeout: float = 5.0) -> bool:
        """Wait for a topic to hold at least count records (testing helper)."""
        start = time.time()
        while time.time() - start < timeout:
            if self.get_record_count(topic) >= count:
                return True
            await asyncio.sleep(0.01)
        return False
