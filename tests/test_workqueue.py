"""Unit tests for the coalescing work queue."""

import asyncio
from unittest.mock import patch

import pytest

from workqueue import ShutDown, WorkQueue


@pytest.mark.asyncio
class TestCoalescing:
    async def test_fifo(self):
        queue = WorkQueue()
        await queue.add("a")
        await queue.add("b")

        assert await queue.get() == "a"
        assert await queue.get() == "b"

    async def test_duplicate_add_is_coalesced(self):
        queue = WorkQueue()
        for _ in range(5):
            await queue.add("a")

        assert len(queue) == 1

    async def test_in_flight_key_is_not_handed_out_twice(self):
        queue = WorkQueue()
        await queue.add("a")
        key = await queue.get()

        await queue.add("a")

        assert len(queue) == 0
        assert queue.is_processing(key)

    async def test_dirty_key_requeued_once_on_done(self):
        queue = WorkQueue()
        await queue.add("a")
        await queue.get()
        await queue.add("a")
        await queue.add("a")

        await queue.done("a")

        assert len(queue) == 1
        assert not queue.is_processing("a")
        assert await queue.get() == "a"

    async def test_done_without_readd_leaves_queue_empty(self):
        queue = WorkQueue()
        await queue.add("a")
        await queue.get()

        await queue.done("a")

        assert len(queue) == 0

    async def test_get_waits_for_add(self):
        queue = WorkQueue()
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        assert not getter.done()

        await queue.add("a")

        assert await asyncio.wait_for(getter, timeout=1) == "a"


@pytest.mark.asyncio
class TestDelayedAdd:
    async def test_add_after_fires(self):
        queue = WorkQueue()
        queue.add_after("a", 0.01)
        assert len(queue) == 0

        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    async def test_earliest_timer_wins(self):
        queue = WorkQueue()
        queue.add_after("a", 30)
        queue.add_after("a", 5)
        queue.add_after("a", 60)

        assert queue.pending_delay("a") == pytest.approx(5, abs=0.5)

    async def test_zero_delay_adds_immediately(self):
        queue = WorkQueue()
        queue.add_after("a", 0)

        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    async def test_no_pending_delay(self):
        queue = WorkQueue()
        assert queue.pending_delay("a") is None


@pytest.mark.asyncio
class TestBackoff:
    async def test_exponential_and_capped(self):
        queue = WorkQueue(base_delay=60, max_delay=3600, jitter_factor=0)
        delays = [queue.add_rate_limited("a") for _ in range(8)]

        assert delays == [60, 120, 240, 480, 960, 1920, 3600, 3600]
        assert queue.failures("a") == 8

    async def test_forget_resets(self):
        queue = WorkQueue(base_delay=60, jitter_factor=0)
        queue.add_rate_limited("a")
        queue.add_rate_limited("a")

        queue.forget("a")

        assert queue.failures("a") == 0
        assert queue.backoff_delay("a") == 60

    async def test_failures_are_per_key(self):
        queue = WorkQueue(base_delay=10, jitter_factor=0)
        queue.add_rate_limited("a")
        queue.add_rate_limited("a")

        assert queue.backoff_delay("b") == 10

    async def test_jitter_bounds(self):
        queue = WorkQueue(base_delay=100, jitter_factor=0.1)
        with patch("workqueue.random.random", return_value=0.0):
            assert queue.backoff_delay("a") == pytest.approx(90)
        with patch("workqueue.random.random", return_value=1.0):
            assert queue.backoff_delay("a") == pytest.approx(110)


@pytest.mark.asyncio
class TestShutdown:
    async def test_get_raises_after_shutdown(self):
        queue = WorkQueue()
        await queue.shutdown()

        with pytest.raises(ShutDown):
            await queue.get()

    async def test_waiting_workers_are_woken(self):
        queue = WorkQueue()
        getters = [asyncio.create_task(queue.get()) for _ in range(3)]
        await asyncio.sleep(0)

        await queue.shutdown()

        results = await asyncio.gather(*getters, return_exceptions=True)
        assert all(isinstance(r, ShutDown) for r in results)

    async def test_adds_ignored_after_shutdown(self):
        queue = WorkQueue()
        await queue.shutdown()

        await queue.add("a")
        queue.add_after("a", 1)

        assert len(queue) == 0
        assert queue.pending_delay("a") is None

    async def test_timers_cancelled(self):
        queue = WorkQueue()
        queue.add_after("a", 30)

        await queue.shutdown()

        assert queue.pending_delay("a") is None
        assert queue.shutting_down
