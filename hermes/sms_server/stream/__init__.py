"""
Change-stream abstraction for the SMS service.

This module provides a pluggable stream backend interface supporting:
- Kafka/Redpanda (production)
- In-memory (for testing and local development)

and the StreamReader loop that connects one stream to the dispatcher.

Invariants:
    - Consumers never auto-commit
    - Records are fetched in order within a partition
    - append() returns only after the backend acknowledged the write
"""

from .base import (
    StartPosition,
    StreamBackend,
    StreamConnectionError,
    StreamConsumer,
    StreamError,
    StreamPos,
    StreamRecord,
    StreamSerializationError,
    StreamTimeoutError,
    create_stream_backend,
)
from .kafka import KafkaStreamBackend, KafkaStreamConsumer
from .memory import InMemoryStreamBackend, InMemoryStreamConsumer
from .reader import StreamReader

__all__ = [
    # Protocols and types
    "StreamBackend",
    "StreamConsumer",
    "StreamRecord",
    "StreamPos",
    "StartPosition",
    "StreamError",
    "StreamConnectionError",
    "StreamTimeoutError",
    "StreamSerializationError",
    # Factory
    "create_stream_backend",
    # Implementations
    "KafkaStreamBackend",
    "KafkaStreamConsumer",
    "InMemoryStreamBackend",
    "InMemoryStreamConsumer",
    # Reader loop
    "StreamReader",
]
