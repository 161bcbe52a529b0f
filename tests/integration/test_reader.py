"""
Integration tests for StreamReader with the in-memory stream backend.

The tests play the dispatcher's side of the channels by hand.

Tests cover:
- Commit of acknowledged records
- Re-fetch of unacknowledged records
- Fetch and seek error retries
- Cancellation without commit
"""

import asyncio

import pytest

from hermes.sms_server.apply.dispatcher import StreamChannels
from hermes.sms_server.stream.base import StreamError
from hermes.sms_server.stream.memory import InMemoryStreamBackend
from hermes.sms_server.stream.reader import StreamReader

TOPIC = "hermes.public.customers"
GROUP = "hermes-sms-svc"


async def eventually(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class TestStreamReader:
    """Tests for StreamReader."""

    @pytest.fixture
    async def backend(self):
        backend = InMemoryStreamBackend()
        await backend.connect()
        yield backend
        await backend.close()

    @pytest.fixture
    def channels(self):
        return StreamChannels()

    @pytest.fixture
    async def reader(self, backend, channels):
        reader = StreamReader(
            name="customers",
            consumer=backend.consumer(TOPIC, GROUP),
            fetch_out=channels.fetch,
            commit_in=channels.commit,
            retry_delay_seconds=0,
        )
        task = asyncio.create_task(reader.run())
        yield reader
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def receive(self, channels):
        return await asyncio.wait_for(channels.fetch.get(), timeout=1.0)

    async def acknowledge(self, channels, record):
        await channels.commit.put(record)
        channels.fetch.task_done()

    def reject(self, channels):
        channels.fetch.task_done()

    @pytest.mark.asyncio
    async def test_acknowledged_record_is_committed(self, backend, channels, reader):
        await backend.append(TOPIC, b'{"after": null}')

        record = await self.receive(channels)
        await self.acknowledge(channels, record)

        await eventually(lambda: backend.committed_offset(TOPIC, GROUP) == 1)
        assert reader.stats["committed_count"] == 1
        assert reader.stats["forwarded_count"] == 1

    @pytest.mark.asyncio
    async def test_records_forwarded_in_order(self, backend, channels, reader):
        for value in (b"a", b"b", b"c"):
            await backend.append(TOPIC, value)

        values = []
        for _ in range(3):
            record = await self.receive(channels)
            values.append(record.value)
            await self.acknowledge(channels, record)

        assert values == [b"a", b"b", b"c"]
        await eventually(lambda: backend.committed_offset(TOPIC, GROUP) == 3)

    @pytest.mark.asyncio
    async def test_unacknowledged_record_is_fetched_again(self, backend, channels, reader):
        """Nothing after a rejected record is delivered until it is handled."""
        await backend.append(TOPIC, b"a")
        await backend.append(TOPIC, b"b")

        first = await self.receive(channels)
        self.reject(channels)

        again = await self.receive(channels)
        assert again.position == first.position
        assert again.value == b"a"
        assert backend.committed_offset(TOPIC, GROUP) == 0

        await self.acknowledge(channels, again)
        following = await self.receive(channels)
        assert following.value == b"b"
        assert reader.stats["redelivered_count"] == 1

    @pytest.mark.asyncio
    async def test_fetch_errors_are_retried(self, backend, channels, reader):
        backend.inject_fetch_failure(TOPIC, StreamError("broker down"))
        await backend.append(TOPIC, b"a")

        record = await self.receive(channels)

        assert record.value == b"a"

    @pytest.mark.asyncio
    async def test_empty_records_are_skipped(self, backend, channels, reader):
        await backend.append(TOPIC, b"")
        await backend.append(TOPIC, b"a")

        record = await self.receive(channels)

        assert record.value == b"a"

    @pytest.mark.asyncio
    async def test_cancel_leaves_record_uncommitted(self, backend, channels):
        await backend.append(TOPIC, b"a")
        reader = StreamReader("customers", backend.consumer(TOPIC, GROUP), channels.fetch, channels.commit)
        task = asyncio.create_task(reader.run())

        await self.receive(channels)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        restarted = backend.consumer(TOPIC, GROUP)
        await restarted.start()
        assert (await restarted.fetch()).value == b"a"


class FlakySeekConsumer:
    """Wraps a consumer and fails the first seek."""

    def __init__(self, consumer):
        self._consumer = consumer
        self.seek_attempts = 0

    async def start(self):
        await self._consumer.start()

    async def stop(self):
        await self._consumer.stop()

    async def fetch(self):
        return await self._consumer.fetch()

    async def commit(self, record):
        await self._consumer.commit(record)

    async def seek(self, position):
        self.seek_attempts += 1
        if self.seek_attempts == 1:
            raise StreamError("No current assignment for partition")
        await self._consumer.seek(position)


class TestStreamReaderSeekFailure:
    @pytest.mark.asyncio
    async def test_seek_failure_is_retried(self):
        """A failed rewind is retried and the rejected record still comes back."""
        backend = InMemoryStreamBackend()
        await backend.connect()
        await backend.append(TOPIC, b"a")
        await backend.append(TOPIC, b"b")
        channels = StreamChannels()
        consumer = FlakySeekConsumer(backend.consumer(TOPIC, GROUP))
        reader = StreamReader("customers", consumer, channels.fetch, channels.commit, retry_delay_seconds=0)
        task = asyncio.create_task(reader.run())

        try:
            first = await asyncio.wait_for(channels.fetch.get(), timeout=1.0)
            channels.fetch.task_done()

            again = await asyncio.wait_for(channels.fetch.get(), timeout=1.0)

            assert again.value == b"a"
            assert again.position == first.position
            assert consumer.seek_attempts == 2
            assert not task.done()
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
