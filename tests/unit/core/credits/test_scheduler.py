"""Unit tests for the timer schedulers."""

import asyncio

import pytest

from src.core.credits import AsyncioScheduler, VirtualScheduler


class TestVirtualScheduler:
    """Deterministic time for debounce and reconnection tests."""

    @pytest.mark.asyncio
    async def test_runs_due_callbacks_in_order(self):
        scheduler = VirtualScheduler()
        calls = []
        scheduler.call_later(2, lambda: calls.append("b"))
        scheduler.call_later(1, lambda: calls.append("a"))
        scheduler.call_later(5, lambda: calls.append("c"))

        ran = await scheduler.advance(2)

        assert calls == ["a", "b"]
        assert ran == 2
        assert scheduler.now() == 2
        assert scheduler.next_due() == 5

    @pytest.mark.asyncio
    async def test_cancelled_callbacks_skipped(self):
        scheduler = VirtualScheduler()
        calls = []
        task = scheduler.call_later(1, lambda: calls.append("x"))

        task.cancel()
        ran = await scheduler.advance(5)

        assert calls == []
        assert ran == 0
        assert task.cancelled is True
        assert task.pending is False

    @pytest.mark.asyncio
    async def test_chained_callbacks_run_within_window(self):
        scheduler = VirtualScheduler()
        calls = []

        def first():
            calls.append(scheduler.now())
            scheduler.call_later(1, lambda: calls.append(scheduler.now()))

        scheduler.call_later(1, first)
        await scheduler.advance(3)

        assert calls == [1, 2]

    @pytest.mark.asyncio
    async def test_async_callback_awaited(self):
        scheduler = VirtualScheduler()
        calls = []

        async def callback():
            calls.append("done")

        task = scheduler.call_later(0, callback)
        await scheduler.advance(0)

        assert calls == ["done"]
        assert task.done is True

    @pytest.mark.asyncio
    async def test_failing_callback_is_contained(self):
        scheduler = VirtualScheduler()
        calls = []

        def broken():
            raise RuntimeError("boom")

        scheduler.call_later(1, broken)
        scheduler.call_later(2, lambda: calls.append("after"))

        await scheduler.advance(2)

        assert calls == ["after"]

    def test_pending_count(self):
        scheduler = VirtualScheduler(start=10.0)
        scheduler.call_later(1, lambda: None)
        cancelled = scheduler.call_later(2, lambda: None)
        cancelled.cancel()

        assert scheduler.pending_count == 1
        assert scheduler.next_due() == 11.0


class TestAsyncioScheduler:
    @pytest.mark.asyncio
    async def test_call_later_runs_on_loop(self):
        scheduler = AsyncioScheduler()
        fired = asyncio.Event()

        task = scheduler.call_later(0.01, fired.set)
        await asyncio.wait_for(fired.wait(), timeout=1.0)

        assert task.done is True

    @pytest.mark.asyncio
    async def test_cancel_prevents_run(self):
        scheduler = AsyncioScheduler()
        calls = []

        task = scheduler.call_later(0.01, lambda: calls.append("x"))
        task.cancel()
        await asyncio.sleep(0.05)

        assert calls == []
