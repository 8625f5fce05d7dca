"""
Timer scheduling for debounce and reconnection.

Components take a Scheduler instead of calling asyncio directly, so tests
can swap in VirtualScheduler and advance time deterministically.
"""

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[None]]]


class ScheduledTask:
    """Handle for a pending timer callback."""

    def __init__(self, callback: TimerCallback, due: float):
        self.callback = callback
        self.due = due
        self.cancelled = False
        self.done = False
        self._handle: Any = None  # asyncio.TimerHandle or asyncio.Task

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.done)

    def cancel(self) -> None:
        if not self.pending:
            return
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()

    async def _run(self) -> None:
        if self.cancelled:
            return
        self.done = True
        try:
            result = self.callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Scheduled callback {getattr(self.callback, '__name__', self.callback)} failed: {e}")

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "done" if self.done else "pending"
        return f"ScheduledTask(due={self.due:.3f}, {state})"


class Scheduler(ABC):
    """Abstract timer source."""

    @abstractmethod
    def now(self) -> float:
        """Current time in seconds."""
        ...

    @abstractmethod
    def call_later(self, delay: float, callback: TimerCallback) -> ScheduledTask:
        """Run ``callback`` (sync or async) after ``delay`` seconds."""
        ...

    @abstractmethod
    async def sleep(self, delay: float) -> None:
        ...


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: TimerCallback) -> ScheduledTask:
        loop = asyncio.get_running_loop()
        task = ScheduledTask(callback, self.now() + max(0.0, delay))

        def fire() -> None:
            if task.cancelled:
                return
            task._handle = loop.create_task(task._run())

        task._handle = loop.call_later(max(0.0, delay), fire)
        return task

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)


class VirtualScheduler(Scheduler):
    """
    Deterministic scheduler for tests.

    Time only moves when ``advance`` is awaited; due callbacks then run in
    order of due time, including callbacks scheduled by other callbacks.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: List[Tuple[float, int, ScheduledTask]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: TimerCallback) -> ScheduledTask:
        task = ScheduledTask(callback, self._now + max(0.0, delay))
        heapq.heappush(self._queue, (task.due, next(self._seq), task))
        return task

    async def sleep(self, delay: float) -> None:
        await self.advance(delay)

    async def advance(self, seconds: float) -> int:
        """
        Move time forward, running every callback that falls due.

        Returns:
            Number of callbacks run
        """
        target = self._now + seconds
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, task = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            if task.cancelled:
                continue
            await task._run()
            ran += 1
        self._now = target
        return ran

    @property
    def pending_count(self) -> int:
        return sum(1 for _, _, task in self._queue if task.pending)

    def next_due(self) -> Optional[float]:
        for due, _, task in sorted(self._queue):
            if task.pending:
                return due
        return None


__all__ = [
    "TimerCallback",
    "ScheduledTask",
    "Scheduler",
    "AsyncioScheduler",
    "VirtualScheduler",
]
