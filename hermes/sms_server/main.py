"""
Hermes SMS service - main entry point.

This module starts the service with all components:
- Customer store (SQLite projection of upstream customers)
- Stream backend (Kafka consumers for four topics + retry producer)
- SMS transport
- Dispatcher and one StreamReader per stream

Usage:
    python -m hermes.sms_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store is initialized before any stream is consumed; failing to
      initialize it is fatal
    - Shutdown stops readers and the dispatcher first, then waits for
      in-flight deliveries, then closes the transport and the producer

How to change safely:
    - Register new streams with the dispatcher before starting readers
    - Test the shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import functools
import logging
import signal
import sys

import json_log_formatter

from .apply.customer_store import CustomerStore
from .apply.dispatcher import Dispatcher
from .apply.events import StreamKind
from .apply.handlers import (
    handle_customer_change,
    handle_notification,
    handle_preference_change,
    handle_retry_delivery,
)
from .config import ServiceConfig
from .delivery.fanout import DeliveryFanout
from .delivery.retry import RetryPublisher
from .delivery.sms import InMemorySmsTransport, SnsSmsTransport, create_sms_transport
from .stream import StreamBackend, StreamReader, create_stream_backend

logger = logging.getLogger(__name__)


def setup_logging(config: ServiceConfig) -> None:
    """Configure logging based on configuration."""
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


class Service:
    """Hermes SMS service orchestrator.

    Attributes:
        config: Service configuration
        store: Customer store
        backend: Stream backend
        transport: SMS transport
        fanout: Notification fan-out
        dispatcher: Record dispatcher
        readers: One reader per stream

    Example:
        >>> service = Service()
        >>> await service.start()  # runs until request_shutdown()
        >>> await service.stop()
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        backend: StreamBackend | None = None,
        transport: SnsSmsTransport | InMemorySmsTransport | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            config: Optional configuration (loaded from env if not provided)
            backend: Optional stream backend (built from config if not provided)
            transport: Optional SMS transport (built from config if not provided)
        """
        self.config = config or ServiceConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.store: CustomerStore | None = None
        self.backend = backend
        self.transport = transport
        self.fanout: DeliveryFanout | None = None
        self.dispatcher: Dispatcher | None = None
        self.readers: list[StreamReader] = []

        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start every component and run until shutdown is requested."""
        if self._running:
            logger.warning("Service already running")
            return

        logger.info("Starting Hermes SMS service")
        self.config.log_config()

        try:
            self.store = CustomerStore(
                db_path=self.config.storage.db_path,
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
            )
            await self.store.initialize()

            if self.backend is None:
                self.backend = create_stream_backend(self.config)
            await self.backend.connect()

            if self.transport is None:
                self.transport = create_sms_transport(self.config)
            await self.transport.connect()

            self.fanout = DeliveryFanout(
                transport=self.transport,
                retry_publisher=RetryPublisher(self.backend, self.config.topics.retry),
                send_interval_seconds=self.config.fanout.send_interval_seconds,
                max_concurrent_sends=self.config.fanout.max_concurrent_sends,
            )

            self.dispatcher = Dispatcher()
            self._register_handlers()

            for kind in StreamKind:
                channels = self.dispatcher.channels(kind)
                consumer = self.backend.consumer(
                    self.config.topics.topic_for(kind),
                    self.config.kafka.consumer_group,
                    self.config.topics.start_for(kind),
                )
                self.readers.append(
                    StreamReader(
                        name=kind.value,
                        consumer=consumer,
                        fetch_out=channels.fetch,
                        commit_in=channels.commit,
                        retry_delay_seconds=self.config.reader.retry_delay_ms / 1000.0,
                    )
                )

            self._tasks.append(asyncio.create_task(self.dispatcher.run(), name="dispatcher"))
            for reader in self.readers:
                self._tasks.append(asyncio.create_task(reader.run(), name=f"reader-{reader.name}"))

            self._running = True
            logger.info("Hermes SMS service started")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Service startup failed: {e}", exc_info=True)
            await self._teardown()
            raise

    def _register_handlers(self) -> None:
        self.dispatcher.register(
            StreamKind.CUSTOMERS,
            functools.partial(handle_customer_change, store=self.store),
        )
        self.dispatcher.register(
            StreamKind.PREFERENCES,
            functools.partial(
                handle_preference_change,
                store=self.store,
                sms_channel_type_id=self.config.sms.channel_type_uuid,
            ),
        )
        self.dispatcher.register(
            StreamKind.NOTIFICATIONS,
            functools.partial(handle_notification, store=self.store, fanout=self.fanout),
        )
        self.dispatcher.register(
            StreamKind.RETRY,
            functools.partial(handle_retry_delivery, transport=self.transport),
        )

    async def stop(self) -> None:
        """Stop the service gracefully."""
        if not self._running:
            return

        logger.info("Stopping Hermes SMS service")
        await self._teardown()
        logger.info("Hermes SMS service stopped")

    async def _teardown(self) -> None:
        if self.dispatcher:
            self.dispatcher.stop()

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.fanout:
            await self.fanout.close()

        if self.transport:
            await self.transport.close()

        if self.backend:
            await self.backend.close()

        self._running = False

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    @property
    def stats(self) -> dict:
        """Get statistics of every running component."""
        return {
            "readers": [reader.stats for reader in self.readers],
            "dispatcher": self.dispatcher.stats if self.dispatcher else None,
            "fanout": self.fanout.stats if self.fanout else None,
        }


def main() -> None:
    """Main entry point."""
    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    service = Service(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        service.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT):
        loop.add_signal_handler(sig, handle_signal, sig)

    exit_code = 0
    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        pass
    except Exception:
        exit_code = 1
    finally:
        loop.run_until_complete(service.stop())
        loop.close()

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
