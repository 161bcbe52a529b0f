"""
Notification fan-out.

DeliveryFanout texts one notification to many customers. The caller gets
control back immediately; a background task walks the recipients, starting
one send attempt per recipient and pausing between dispatches so the SMS
provider's sending-rate ceiling is respected.

Invariants:
    - Exactly one send attempt per recipient per dispatch() call
    - The pacing delay sits on the dispatch loop, never inside a send
    - A failed send produces exactly one RetryRecord; a successful one none
    - At most max_concurrent_sends attempts are in flight at once
    - close() waits for every started fan-out and attempt to finish

How to change safely:
    - Keep failures out of the caller's path; the triggering notification
      is already committed when the fan-out runs
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from ..apply.customer_store import Customer
from ..apply.events import RetryRecord
from ..stream.base import StreamError
from .retry import RetryPublisher
from .sms import SmsDeliveryError, SmsTransport

logger = logging.getLogger(__name__)


class FanoutClosedError(Exception):
    """dispatch() was called after close()."""

    pass


class DeliveryFanout:
    """Sends a notification to a set of customers.

    Example:
        >>> fanout = DeliveryFanout(transport, RetryPublisher(backend, "hermes.sms.retry-queue"))
        >>> fanout.dispatch(customers, "Hello")
        >>> await fanout.close()
    """

    def __init__(
        self,
        transport: SmsTransport,
        retry_publisher: RetryPublisher,
        send_interval_seconds: float = 1.0,
        max_concurrent_sends: int = 16,
    ) -> None:
        """Initialize the fan-out.

        Args:
            transport: SMS transport used for every attempt
            retry_publisher: Destination for failed deliveries
            send_interval_seconds: Pause between two dispatched attempts
            max_concurrent_sends: Upper bound on in-flight attempts
        """
        self.transport = transport
        self.retry_publisher = retry_publisher
        self.send_interval_seconds = send_interval_seconds
        self.max_concurrent_sends = max_concurrent_sends

        self._slots = asyncio.Semaphore(max_concurrent_sends)
        self._tasks: set[asyncio.Task] = set()
        self._closed = False
        self._delivered_count = 0
        self._requeued_count = 0
        self._dropped_count = 0

    def dispatch(self, customers: Iterable[Customer], text: str) -> asyncio.Task:
        """Start texting every customer; returns without waiting.

        Raises:
            FanoutClosedError: If the fan-out is shutting down
        """
        if self._closed:
            raise FanoutClosedError("Fan-out is closed")

        recipients = [customer.phone_number for customer in customers]
        logger.info("Starting notification fan-out", extra={"recipients": len(recipients)})
        return self._track(asyncio.create_task(self._fan_out(recipients, text)))

    async def wait_idle(self) -> None:
        """Wait until no fan-out or send attempt is running."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def close(self) -> None:
        """Refuse new fan-outs and wait for in-flight ones."""
        self._closed = True
        if self._tasks:
            logger.info("Waiting for in-flight deliveries", extra={"tasks": len(self._tasks)})
        await self.wait_idle()

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _fan_out(self, recipients: list[str], text: str) -> None:
        for index, phone_number in enumerate(recipients):
            if index:
                # provider rate ceiling
                await asyncio.sleep(self.send_interval_seconds)

            await self._slots.acquire()
            self._track(asyncio.create_task(self._deliver(phone_number, text)))

    async def _deliver(self, phone_number: str, text: str) -> None:
        try:
            await self.transport.send(phone_number, text)
            self._delivered_count += 1
        except SmsDeliveryError as e:
            logger.warning(f"Delivery failed, queueing retry: {e}")
            await self._requeue(RetryRecord(phone_number=phone_number, text=text))
        except Exception as e:
            logger.error(f"Unexpected delivery error, queueing retry: {e}", exc_info=True)
            await self._requeue(RetryRecord(phone_number=phone_number, text=text))
        finally:
            self._slots.release()

    async def _requeue(self, record: RetryRecord) -> None:
        try:
            await self.retry_publisher.publish(record)
            self._requeued_count += 1
        except StreamError as e:
            self._dropped_count += 1
            logger.error(f"Unable to insert failed notification into retry queue: {e}")

    @property
    def stats(self) -> dict[str, Any]:
        """Get fan-out statistics."""
        return {
            "in_flight": len(self._tasks),
            "delivered_count": self._delivered_count,
            "requeued_count": self._requeued_count,
            "dropped_count": self._dropped_count,
        }
