"""Scheduler abstraction for repeating timers and background delivery tasks.

:class:`AsyncioScheduler` runs on the live event loop. :class:`VirtualScheduler`
keeps its own clock so tests can ``await scheduler.advance(300)`` instead of
sleeping.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


@runtime_checkable
class CancelHandle(Protocol):
    def cancel(self) -> None:
        ...


@runtime_checkable
class Scheduler(Protocol):
    """Abstract timer/task scheduler."""

    def schedule_repeating(self, interval: float, callback: TimerCallback) -> CancelHandle:
        """Invoke ``callback`` every ``interval`` seconds until cancelled."""
        ...

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Future:
        """Run ``coro`` in the background and return a handle to await it."""
        ...


async def _invoke(callback: TimerCallback) -> None:
    try:
        await callback()
    except Exception:
        logger.exception("Scheduled callback %r failed", callback)


# ---------------------------------------------------------------------------
# Real event loop
# ---------------------------------------------------------------------------

class _TaskHandle:
    def __init__(self, task: asyncio.Task) -> None:
        self._task = task

    def cancel(self) -> None:
        self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()


class AsyncioScheduler:
    """Scheduler backed by ``asyncio`` tasks on the running loop."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def schedule_repeating(self, interval: float, callback: TimerCallback) -> CancelHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                await _invoke(callback)

        return _TaskHandle(self._track(asyncio.get_running_loop().create_task(_loop())))

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Future:
        return self._track(asyncio.get_running_loop().create_task(coro))

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def shutdown(self) -> None:
        """Cancel every outstanding timer and task."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


# ---------------------------------------------------------------------------
# Virtual time
# ---------------------------------------------------------------------------

@dataclass
class _VirtualTimer:
    interval: float
    callback: TimerCallback
    next_fire: float
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualScheduler:
    """Deterministic scheduler for tests.

    Timers only fire inside :meth:`advance`; spawned coroutines run as
    ordinary tasks on the current loop.
    """

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: list[_VirtualTimer] = []
        self._tasks: set[asyncio.Task] = set()

    def schedule_repeating(self, interval: float, callback: TimerCallback) -> CancelHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        timer = _VirtualTimer(interval=interval, callback=callback, next_fire=self.now + interval)
        self._timers.append(timer)
        return timer

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Future:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def active_timers(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move virtual time forward, firing due timers in chronological order."""
        target = self.now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.next_fire <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.next_fire)
            self.now = timer.next_fire
            timer.next_fire += timer.interval
            await _invoke(timer.callback)
        self.now = target
        self._timers = [t for t in self._timers if not t.cancelled]
        await self.settle()

    async def settle(self) -> None:
        """Wait for every spawned task to finish."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        await self.settle()
