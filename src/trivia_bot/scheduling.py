from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

LOGGER = logging.getLogger("trivia_bot")

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle:
    def __init__(self, name: str, delay: float) -> None:
        self.name = name
        self.delay = delay
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class Scheduler:
    def schedule(self, delay: float, callback: TimerCallback, name: str) -> TimerHandle:
        raise NotImplementedError


class _AsyncioTimerHandle(TimerHandle):
    def __init__(self, name: str, delay: float) -> None:
        super().__init__(name, delay)
        self.timer: asyncio.TimerHandle | None = None
        self.task: asyncio.Task[None] | None = None

    def cancel(self) -> None:
        super().cancel()
        if self.timer is not None:
            self.timer.cancel()
        # A callback that already started is left to finish; its own epoch
        # check discards any stale transition.


class AsyncioScheduler(Scheduler):
    """Fixed-delay, one-shot timers on the running event loop."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def schedule(self, delay: float, callback: TimerCallback, name: str) -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = _AsyncioTimerHandle(name, delay)

        def _fire() -> None:
            if handle.cancelled:
                return
            task = loop.create_task(self._run(handle, callback), name=f"timer-{name}")
            handle.task = task
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        handle.timer = loop.call_later(max(0.0, delay), _fire)
        return handle

    @staticmethod
    async def _run(handle: TimerHandle, callback: TimerCallback) -> None:
        try:
            await callback()
        except Exception:
            LOGGER.exception("timer_callback_failed name=%s", handle.name)

    async def drain(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
