"""
Per-stream reader loop.

A StreamReader owns one consumer and two channels shared with the
Dispatcher: it forwards fetched records on the fetch channel and a
concurrent drain task commits every record echoed back on the commit
channel.

Invariants:
    - The fetch handoff is a rendezvous: the reader waits until the
      Dispatcher has finished with a record before fetching the next one
    - A record that is not echoed back is re-fetched from its own position,
      so nothing later in the stream is delivered while it is unacknowledged
    - Commits happen in receipt order, only from the drain task
    - Fetch and seek errors never advance the position or end the reader

How to change safely:
    - Do not buffer more than one in-flight record per stream; commit order
      and redelivery both depend on it
    - Cancellation must leave uncommitted records for redelivery
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .base import StreamConsumer, StreamError, StreamPos, StreamRecord

logger = logging.getLogger(__name__)


class StreamReader:
    """Fetches records from one stream and commits the acknowledged ones.

    Attributes:
        name: Logical stream name used in logs
        consumer: Consumer for the stream's topic
        fetch_out: Channel to the Dispatcher
        commit_in: Channel of handled records from the Dispatcher
        retry_delay_seconds: Pause before retrying a failed fetch or
            re-fetching an unacknowledged record

    Example:
        >>> channels = dispatcher.register(StreamKind.CUSTOMERS, handler)
        >>> reader = StreamReader("customers", consumer, channels.fetch, channels.commit)
        >>> task = asyncio.create_task(reader.run())
    """

    def __init__(
        self,
        name: str,
        consumer: StreamConsumer,
        fetch_out: asyncio.Queue,
        commit_in: asyncio.Queue,
        retry_delay_seconds: float = 1.0,
    ) -> None:
        self.name = name
        self.consumer = consumer
        self.fetch_out = fetch_out
        self.commit_in = commit_in
        self.retry_delay_seconds = retry_delay_seconds

        self._acknowledged: StreamRecord | None = None
        self._last_committed: StreamPos | None = None
        self._forwarded_count = 0
        self._committed_count = 0
        self._redelivered_count = 0

    async def run(self) -> None:
        """Run until cancelled."""
        drain_task = asyncio.create_task(self._drain_commits(), name=f"{self.name}-commits")
        logger.info("Starting stream reader", extra={"stream": self.name})

        try:
            await self._open()

            while True:
                record = await self._fetch()
                if record.is_empty:
                    continue

                await self._forward(record)

                if self._acknowledged is not record:
                    self._redelivered_count += 1
                    logger.warning(
                        "Record not acknowledged, fetching it again",
                        extra={"stream": self.name, **record.position.to_dict()},
                    )
                    await self._rewind(record)
                    await asyncio.sleep(self.retry_delay_seconds)

        except asyncio.CancelledError:
            logger.info("Stream reader cancelled", extra={"stream": self.name})

        finally:
            drain_task.cancel()
            await asyncio.gather(drain_task, return_exceptions=True)
            await self.consumer.stop()

    async def _open(self) -> None:
        while True:
            try:
                await self.consumer.start()
                return
            except StreamError as e:
                logger.error(
                    f"Could not start consumer: {e}",
                    extra={"stream": self.name},
                )
                await asyncio.sleep(self.retry_delay_seconds)

    async def _fetch(self) -> StreamRecord:
        while True:
            try:
                return await self.consumer.fetch()
            except StreamError as e:
                logger.warning(f"Fetch failed: {e}", extra={"stream": self.name})
                await asyncio.sleep(self.retry_delay_seconds)

    async def _rewind(self, record: StreamRecord) -> None:
        while True:
            try:
                await self.consumer.seek(record.position)
                return
            except StreamError as e:
                logger.warning(
                    f"Seek failed: {e}",
                    extra={"stream": self.name, **record.position.to_dict()},
                )
                await asyncio.sleep(self.retry_delay_seconds)

    async def _forward(self, record: StreamRecord) -> None:
        """Hand the record over and wait until its outcome is known."""
        self._forwarded_count += 1
        await self.fetch_out.put(record)
        await self.fetch_out.join()
        # The dispatcher enqueues the commit before releasing the fetch
        # handoff, so joining here covers a record it just acknowledged.
        await self.commit_in.join()

    async def _drain_commits(self) -> None:
        while True:
            record = await self.commit_in.get()
            try:
                self._acknowledged = record
                await self.consumer.commit(record)
                self._committed_count += 1
                self._last_committed = record.position
            except StreamError as e:
                logger.error(
                    f"Commit failed: {e}",
                    extra={"stream": self.name, **record.position.to_dict()},
                )
            finally:
                self.commit_in.task_done()

    @property
    def stats(self) -> dict[str, Any]:
        """Get reader statistics."""
        return {
            "stream": self.name,
            "forwarded_count": self._forwarded_count,
            "committed_count": self._committed_count,
            "redelivered_count": self._redelivered_count,
            "last_committed": str(self._last_committed) if self._last_committed else None,
        }
