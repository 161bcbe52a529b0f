"""
Dispatcher: the single coordination point between stream readers and
entity handlers.

The Dispatcher owns a fetch channel and a commit channel per stream. It
waits on every fetch channel at once, decodes each record with its
stream's schema, runs the stream's handler and, when the handler reports
success, hands the very same record back on that stream's commit channel.

Invariants:
    - Records are processed one at a time across all streams
    - A record is only ever echoed to the commit channel of the stream it
      arrived on
    - Decode failures and handler failures are never committed
    - Every stream keeps a pending receive, so no stream starves another

How to change safely:
    - Always call task_done() on the fetch channel after the commit is
      enqueued; readers rely on that order to detect unacknowledged records
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..stream.base import StreamRecord
from .events import RecordDecodeError, StreamKind, decode_record

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[bool]]


@dataclass
class StreamChannels:
    """The channel pair shared by one reader and the dispatcher.

    Both queues hold a single record; the reader joins the fetch queue to
    wait for the dispatcher to finish with a record.
    """

    fetch: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=1))
    commit: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=1))


@dataclass
class StreamRoute:
    kind: StreamKind
    handler: Handler
    channels: StreamChannels = field(default_factory=StreamChannels)


class Dispatcher:
    """Routes records from every stream to their handlers.

    Example:
        >>> dispatcher = Dispatcher()
        >>> channels = dispatcher.register(StreamKind.RETRY, retry_handler)
        >>> task = asyncio.create_task(dispatcher.run())
        >>> dispatcher.stop()
    """

    def __init__(self, shutdown: asyncio.Event | None = None) -> None:
        """Initialize the dispatcher.

        Args:
            shutdown: Event that stops run(); a private one is created if omitted
        """
        self._shutdown = shutdown or asyncio.Event()
        self._routes: dict[StreamKind, StreamRoute] = {}
        self._counters: dict[StreamKind, Counter] = {}

    def register(self, kind: StreamKind, handler: Handler) -> StreamChannels:
        """Register the handler of a stream and return its channels.

        Raises:
            ValueError: If the stream is already registered
        """
        if kind in self._routes:
            raise ValueError(f"Stream already registered: {kind.value}")

        route = StreamRoute(kind=kind, handler=handler)
        self._routes[kind] = route
        self._counters[kind] = Counter()
        return route.channels

    def channels(self, kind: StreamKind) -> StreamChannels:
        return self._routes[kind].channels

    async def run(self) -> None:
        """Process records until the shutdown event is set.

        Records still waiting in a channel at shutdown are left alone;
        their readers never see a commit for them.
        """
        if not self._routes:
            raise ValueError("No streams registered")

        logger.info(
            "Starting dispatcher",
            extra={"streams": [kind.value for kind in self._routes]},
        )

        receivers = {kind: self._receive(kind) for kind in self._routes}
        stop_waiter = asyncio.create_task(self._shutdown.wait())

        try:
            while True:
                done, _ = await asyncio.wait(
                    {*receivers.values(), stop_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if stop_waiter in done:
                    logger.info("Dispatcher stopping")
                    return

                for kind, receiver in list(receivers.items()):
                    if receiver not in done:
                        continue

                    channels = self._routes[kind].channels
                    try:
                        await self.dispatch(kind, receiver.result())
                    finally:
                        channels.fetch.task_done()

                    receivers[kind] = self._receive(kind)

                    if self._shutdown.is_set():
                        logger.info("Dispatcher stopping")
                        return

        except asyncio.CancelledError:
            logger.info("Dispatcher cancelled")

        finally:
            for task in (*receivers.values(), stop_waiter):
                task.cancel()

    def stop(self) -> None:
        """Request run() to return."""
        self._shutdown.set()

    async def dispatch(self, kind: StreamKind, record: StreamRecord) -> bool:
        """Decode, handle and (on success) acknowledge one record.

        Returns:
            True if the record was handled and enqueued for commit
        """
        route = self._routes[kind]
        counters = self._counters[kind]

        try:
            decoded = decode_record(kind, record)
        except RecordDecodeError as e:
            counters["dropped"] += 1
            logger.warning(
                f"Dropping undecodable record: {e}",
                extra={"stream": kind.value, **record.position.to_dict()},
            )
            return False

        try:
            handled = await route.handler(decoded)
        except Exception as e:
            logger.error(
                f"Handler raised: {e}",
                extra={"stream": kind.value, **record.position.to_dict()},
                exc_info=True,
            )
            handled = False

        if not handled:
            counters["failed"] += 1
            return False

        counters["handled"] += 1
        await route.channels.commit.put(record)
        return True

    def _receive(self, kind: StreamKind) -> asyncio.Task:
        return asyncio.create_task(
            self._routes[kind].channels.fetch.get(),
            name=f"dispatch-{kind.value}",
        )

    @property
    def stats(self) -> dict[str, Any]:
        """Get per-stream dispatch statistics."""
        return {
            kind.value: {
                "handled": counters["handled"],
                "failed": counters["failed"],
                "dropped": counters["dropped"],
            }
            for kind, counters in self._counters.items()
        }
