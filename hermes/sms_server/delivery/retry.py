"""
Retry queue publisher.

Failed deliveries are written back to the retry stream as RetryRecords,
where the service's own retry reader picks them up again.
"""

from __future__ import annotations

import logging

from ..apply.events import RetryRecord
from ..stream.base import StreamBackend, StreamPos

logger = logging.getLogger(__name__)


class RetryPublisher:
    """Appends retry records to the retry topic.

    Attributes:
        backend: Stream backend used as producer
        topic: Retry topic name
    """

    def __init__(self, backend: StreamBackend, topic: str) -> None:
        self.backend = backend
        self.topic = topic

    async def publish(self, record: RetryRecord) -> StreamPos:
        """Append the record, keyed by phone number.

        Raises:
            StreamError: If the append fails
        """
        pos = await self.backend.append(self.topic, record.to_json(), key=record.phone_number)
        logger.info("Queued failed notification for retry", extra=pos.to_dict())
        return pos
