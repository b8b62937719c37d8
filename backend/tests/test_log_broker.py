"""Tests for the in-process log broker: replay, fan-out and back-pressure."""

import asyncio

import pytest

from shipyard.services.log_broker import LogBroker, LogChunk, StreamEnd


async def _drain(subscription, timeout=1.0):
    items = []
    while True:
        item = await subscription.get(timeout=timeout)
        if item is None:
            return items
        items.append(item)


class TestProducer:

    def test_append_assigns_increasing_seq(self):
        broker = LogBroker()
        broker.open(1)
        first = broker.append(1, "a")
        second = broker.append(1, "b")
        assert (first.seq, second.seq) == (0, 1)
        assert broker.get_logs(1) == "ab"

    def test_empty_text_is_ignored(self):
        broker = LogBroker()
        broker.open(1)
        assert broker.append(1, "") is None
        assert broker.get_logs(1) == ""

    def test_append_after_close_is_dropped(self):
        broker = LogBroker()
        broker.open(1)
        broker.append(1, "done\n")
        broker.close(1, "completed")
        assert broker.append(1, "late\n") is None
        assert broker.get_logs(1) == "done\n"

    def test_unknown_job_has_no_channel(self):
        broker = LogBroker()
        assert broker.subscribe(99) is None
        assert broker.get_logs(99) is None


class TestSubscribers:

    @pytest.mark.asyncio
    async def test_late_joiner_gets_replay_then_live_without_gaps(self):
        broker = LogBroker()
        broker.open(1)
        for i in range(3):
            broker.append(1, f"line {i}\n")

        sub = broker.subscribe(1)
        for i in range(3, 6):
            broker.append(1, f"line {i}\n")
        broker.close(1, "completed")

        items = await _drain(sub)
        chunks = [i for i in items if isinstance(i, LogChunk)]
        assert [c.seq for c in chunks] == list(range(6))
        assert "".join(c.text for c in chunks) == broker.get_logs(1)
        assert items[-1] == StreamEnd(1, "completed", None)

    @pytest.mark.asyncio
    async def test_every_subscriber_gets_every_chunk(self):
        broker = LogBroker()
        broker.open(7)
        subs = [broker.subscribe(7) for _ in range(3)]
        broker.append(7, "x")
        broker.append(7, "y")
        broker.close(7, "failed", "install failed: boom")

        for sub in subs:
            items = await _drain(sub)
            assert [i.text for i in items if isinstance(i, LogChunk)] == ["x", "y"]
            assert items[-1].status == "failed"
            assert items[-1].error_message == "install failed: boom"

    @pytest.mark.asyncio
    async def test_subscribe_after_finish_replays_full_log(self):
        broker = LogBroker()
        broker.open(2)
        broker.append(2, "hello\n")
        broker.close(2, "completed")

        sub = broker.subscribe(2)
        items = await _drain(sub)
        assert items == [LogChunk(2, 0, "hello\n"), StreamEnd(2, "completed", None)]
        assert broker.subscriber_count(2) == 0

    @pytest.mark.asyncio
    async def test_slow_reader_drops_oldest_without_blocking_producer(self):
        broker = LogBroker(buffer_size=3)
        broker.open(1)
        slow = broker.subscribe(1)
        for i in range(10):
            broker.append(1, f"{i}")

        assert slow.dropped > 0
        # The job log itself is complete
        assert broker.get_logs(1) == "0123456789"
        received = []
        while True:
            try:
                item = await slow.get(timeout=0.05)
            except asyncio.TimeoutError:
                break
            received.append(item.text)
        assert received[-1] == "9"
        assert len(received) == 3

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent_and_ends_stream(self):
        broker = LogBroker()
        broker.open(1)
        sub = broker.subscribe(1)
        broker.unsubscribe(1, sub)
        broker.unsubscribe(1, sub)
        assert broker.subscriber_count(1) == 0
        assert await sub.get(timeout=1) is None
        # Producer keeps working for remaining readers
        assert broker.append(1, "still here") is not None

    @pytest.mark.asyncio
    async def test_async_iteration(self):
        broker = LogBroker()
        broker.open(3)
        broker.append(3, "a")
        broker.close(3, "completed")
        async with broker.subscribe(3) as sub:
            texts = [item.text async for item in sub if isinstance(item, LogChunk)]
        assert texts == ["a"]


class TestRetention:

    def test_oldest_finished_channels_are_evicted(self):
        broker = LogBroker(retained_jobs=2)
        for job_id in range(1, 5):
            broker.open(job_id)
            broker.append(job_id, "x")
            broker.close(job_id, "completed")
        assert not broker.has_channel(1)
        assert not broker.has_channel(2)
        assert broker.has_channel(3)
        assert broker.has_channel(4)

    def test_channel_with_reader_is_not_evicted(self):
        broker = LogBroker(retained_jobs=1)
        broker.open(1)
        sub = broker.subscribe(1)
        broker.close(1, "completed")
        broker.open(2)
        broker.close(2, "completed")
        # Job 1 finished first but its reader is still attached
        assert broker.has_channel(1)
        assert not broker.has_channel(2)
        broker.unsubscribe(1, sub)

    def test_restore_rebuilds_finished_channel(self):
        broker = LogBroker()
        broker.restore(5, "stored log\n", "failed", "build failed: x")
        assert broker.get_logs(5) == "stored log\n"
        sub = broker.subscribe(5)
        assert sub.closed
