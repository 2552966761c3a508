"""Cancellable timers on top of asyncio tasks."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol, Set

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class Timer(Protocol):
    """Handle returned by a scheduler."""

    @property
    def active(self) -> bool: ...

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: TimerCallback) -> Timer: ...

    def call_every(self, interval: float, callback: TimerCallback) -> Timer: ...


class TaskTimer:
    """A :class:`Timer` backed by an :class:`asyncio.Task`."""

    def __init__(self, task: asyncio.Task[None], name: str) -> None:
        self._task = task
        self.name = name

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    def __repr__(self) -> str:
        state = "active" if self.active else "done"
        return f"<TaskTimer {self.name} {state}>"


class AsyncioScheduler:
    """Run coroutine callbacks after a delay, or on a fixed interval.

    Callback failures are logged; a repeating timer keeps running after one.
    ``close`` cancels everything still pending.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._timers: Set[TaskTimer] = set()

    def call_later(self, delay: float, callback: TimerCallback) -> TaskTimer:
        return self._start(self._run_once(max(0.0, delay), callback), _callback_name(callback))

    def call_every(self, interval: float, callback: TimerCallback) -> TaskTimer:
        if interval <= 0:
            raise ValueError("interval must be positive")
        return self._start(self._run_every(interval, callback), _callback_name(callback))

    def pending(self) -> list[TaskTimer]:
        return [timer for timer in self._timers if timer.active]

    def close(self) -> None:
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()

    def _start(self, coro: Awaitable[None], name: str) -> TaskTimer:
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(coro)
        timer = TaskTimer(task, name)
        self._timers.add(timer)
        task.add_done_callback(lambda _: self._timers.discard(timer))
        return timer

    async def _run_once(self, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        await _invoke(callback)

    async def _run_every(self, interval: float, callback: TimerCallback) -> None:
        while True:
            await asyncio.sleep(interval)
            await _invoke(callback)


async def _invoke(callback: TimerCallback) -> None:
    try:
        await callback()
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Timer callback %s raised", _callback_name(callback))


def _callback_name(callback: TimerCallback) -> str:
    return getattr(callback, "__qualname__", None) or repr(callback)


__all__ = ["AsyncioScheduler", "Scheduler", "TaskTimer", "Timer", "TimerCallback"]
