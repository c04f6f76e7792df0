"""
Tests for the debouncer, the task queue and the named lock registry.
"""

import asyncio

import pytest

from readsync.debounce import Debouncer
from readsync.locks import LockRegistry
from readsync.tasks import TaskQueue


class Recorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, payload):
        self.calls.append(payload)


class TestDebouncer:
    """One action per quiet period, carrying the last payload."""

    @pytest.mark.asyncio
    async def test_burst_coalesces(self, timer, tasks):
        action = Recorder()
        debouncer = Debouncer(timer, 300, action, tasks)
        for n in range(5):
            debouncer.schedule(n)
            timer.advance(100)
        assert action.calls == []
        assert debouncer.pending == 4

        timer.advance(300)
        await tasks.drain()
        assert action.calls == [4]
        assert not debouncer.has_pending

    @pytest.mark.asyncio
    async def test_separate_quiet_periods_fire_separately(self, timer, tasks):
        action = Recorder()
        debouncer = Debouncer(timer, 300, action, tasks)
        debouncer.schedule("a")
        timer.advance(300)
        debouncer.schedule("b")
        timer.advance(300)
        await tasks.drain()
        assert action.calls == ["a", "b"]

    @pytest.mark.asyncio
    async def test_fired_payload_visible_until_written(self, timer, tasks):
        action = Recorder()
        debouncer = Debouncer(timer, 300, action, tasks)
        debouncer.schedule("a")
        timer.advance(300)
        assert debouncer.pending == "a"
        await tasks.drain()
        assert action.calls == ["a"]
        assert debouncer.pending is None

    @pytest.mark.asyncio
    async def test_flush_supersedes_fired_payload(self, timer, tasks):
        action = Recorder()
        debouncer = Debouncer(timer, 300, action, tasks)
        debouncer.schedule("fired")
        timer.advance(300)
        await debouncer.flush("fresh")
        await tasks.drain()
        assert action.calls == ["fresh"]

    @pytest.mark.asyncio
    async def test_flush_writes_fired_payload(self, timer, tasks):
        action = Recorder()
        debouncer = Debouncer(timer, 300, action, tasks)
        debouncer.schedule("fired")
        timer.advance(300)
        await debouncer.flush()
        await tasks.drain()
        assert action.calls == ["fired"]

    @pytest.mark.asyncio
    async def test_flush_runs_now(self, timer, tasks):
        action = Recorder()
        debouncer = Debouncer(timer, 300, action, tasks)
        debouncer.schedule("pending")
        await debouncer.flush()
        timer.advance(1000)
        await tasks.drain()
        assert action.calls == ["pending"]

    @pytest.mark.asyncio
    async def test_flush_with_payload_replaces_pending(self, timer, tasks):
        action = Recorder()
        debouncer = Debouncer(timer, 300, action, tasks)
        debouncer.schedule("stale")
        await debouncer.flush("fresh")
        timer.advance(1000)
        await tasks.drain()
        assert action.calls == ["fresh"]

    @pytest.mark.asyncio
    async def test_flush_without_pending_is_noop(self, timer, tasks):
        action = Recorder()
        await Debouncer(timer, 300, action, tasks).flush()
        assert action.calls == []

    @pytest.mark.asyncio
    async def test_cancel_drops_payload(self, timer, tasks):
        action = Recorder()
        debouncer = Debouncer(timer, 300, action, tasks)
        debouncer.schedule("x")
        debouncer.cancel()
        timer.advance(1000)
        await tasks.drain()
        assert action.calls == []
        assert timer.pending() == []


class TestTaskQueue:
    """Fire-and-forget work that never raises to the submitter."""

    @pytest.mark.asyncio
    async def test_drain_waits_for_tasks(self):
        queue = TaskQueue()
        done = []

        async def work(n):
            await asyncio.sleep(0)
            done.append(n)

        for n in range(3):
            queue.submit(work(n))
        assert queue.pending == 3
        await queue.drain()
        assert sorted(done) == [0, 1, 2]
        assert queue.pending == 0

    @pytest.mark.asyncio
    async def test_failures_recorded_not_raised(self):
        queue = TaskQueue()

        async def boom():
            raise ValueError("nope")

        task = queue.submit(boom(), name="boom")
        await queue.drain()
        assert task.result() is None
        assert [label for label, _ in queue.failures] == ["boom"]

    @pytest.mark.asyncio
    async def test_drain_includes_tasks_submitted_meanwhile(self):
        queue = TaskQueue()
        done = []

        async def child():
            done.append("child")

        async def parent():
            queue.submit(child())

        queue.submit(parent())
        await queue.drain()
        assert done == ["child"]


class TestLockRegistry:
    """Named locks serialize read-modify-write sequences."""

    def test_same_name_same_lock(self):
        locks = LockRegistry()
        assert locks.get("archive") is locks.get("archive")
        assert locks.get("archive") is not locks.get("annotations")

    @pytest.mark.asyncio
    async def test_read_modify_write_not_lost(self):
        locks = LockRegistry()
        shared = {"items": []}

        async def append(value):
            async with locks.hold("items"):
                current = list(shared["items"])
                await asyncio.sleep(0)
                shared["items"] = current + [value]

        await asyncio.gather(*(append(n) for n in range(5)))
        assert sorted(shared["items"]) == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_waiters_run_in_arrival_order(self):
        locks = LockRegistry()
        order = []

        async def worker(n):
            async with locks.hold("x"):
                order.append(n)
                await asyncio.sleep(0)

        await asyncio.gather(*(worker(n) for n in range(4)))
        assert order == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_is_locked(self):
        locks = LockRegistry()
        assert not locks.is_locked("x")
        async with locks.hold("x"):
            assert locks.is_locked("x")
        assert not locks.is_locked("x")
