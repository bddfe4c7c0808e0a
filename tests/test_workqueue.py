"""Tests for the reconcile work queue."""

import asyncio

import pytest

from sentinel_rollout.workqueue import QueueShutDown, WorkQueue


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self):
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


class TestWorkQueue:
    """Test cases for WorkQueue."""

    @pytest.mark.asyncio
    async def test_add_and_get(self):
        """Test a queued key is handed out and marked processing."""
        queue = WorkQueue()
        queue.add("workload/web")

        key = await asyncio.wait_for(queue.get(), timeout=1)

        assert key == "workload/web"
        assert queue.is_processing("workload/web")
        assert len(queue) == 0

    def test_duplicate_adds_coalesce(self):
        """Test adding a queued key twice keeps one entry."""
        queue = WorkQueue()
        queue.add("workload/web")
        queue.add("workload/web")

        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_add_while_processing_is_deferred(self):
        """Test a key is never handed to two workers at once."""
        queue = WorkQueue()
        queue.add("workload/web")
        key = await asyncio.wait_for(queue.get(), timeout=1)

        queue.add(key)
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert not queue.is_processing(key)

    @pytest.mark.asyncio
    async def test_earliest_time_wins(self):
        """Test a sooner add overrides a later one for the same key."""
        clock = ManualClock()
        queue = WorkQueue(clock=clock)
        queue.add("workload/web", delay=10)
        queue.add("workload/web", delay=1)
        clock.t = 1

        key = await asyncio.wait_for(queue.get(), timeout=1)

        assert key == "workload/web"
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_delayed_key_not_ready(self):
        """Test a delayed key is withheld until its time."""
        clock = ManualClock()
        queue = WorkQueue(clock=clock)
        queue.add("workload/web", delay=5)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(queue.get(), timeout=0.05)

    @pytest.mark.asyncio
    async def test_keys_ordered_by_due_time(self):
        """Test keys come out in due-time order."""
        clock = ManualClock()
        queue = WorkQueue(clock=clock)
        queue.add("workload/b", delay=2)
        queue.add("workload/a", delay=1)
        clock.t = 3

        first = await asyncio.wait_for(queue.get(), timeout=1)
        second = await asyncio.wait_for(queue.get(), timeout=1)

        assert (first, second) == ("workload/a", "workload/b")

    def test_rate_limited_backoff(self):
        """Test failure backoff doubles up to the cap and resets on forget."""
        queue = WorkQueue(backoff_base=1.0, backoff_max=8.0)

        delays = [queue.add_rate_limited("workload/web") for _ in range(5)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]
        assert queue.num_requeues("workload/web") == 5

        queue.forget("workload/web")
        assert queue.num_requeues("workload/web") == 0
        assert queue.add_rate_limited("workload/web") == 1.0

    @pytest.mark.asyncio
    async def test_shutdown_wakes_getters(self):
        """Test shut_down releases a waiting worker."""
        queue = WorkQueue()
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.shut_down()

        with pytest.raises(QueueShutDown):
            await asyncio.wait_for(waiter, timeout=1)
        assert queue.shutting_down

    def test_add_after_shutdown_ignored(self):
        """Test adds after shutdown are dropped."""
        queue = WorkQueue()
        queue.shut_down()
        queue.add("workload/web")

        assert len(queue) == 0
