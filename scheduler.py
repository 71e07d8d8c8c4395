"""Cancellable timers for the session's one-second tick and delayed moves."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TimerHandle:
    def __init__(self, cancel: Callable[[], None] | None = None) -> None:
        self._cancel = cancel
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._cancel is not None:
            self._cancel()


class ManualScheduler:
    """Scheduler driven by an explicit virtual clock.

    ``advance(seconds)`` runs every callback that falls due, in time order,
    so a session can be replayed deterministically.
    """

    def __init__(self) -> None:
        self.now = 0.0
        self._queue: list[tuple[float, int, Callable[[], None], TimerHandle, Optional[float]]] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()
        self._push(self.now + max(0.0, delay), callback, handle, None)
        return handle

    def call_repeating(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle()
        self._push(self.now + interval, callback, handle, interval)
        return handle

    def _push(self, when, callback, handle, interval) -> None:
        heapq.heappush(self._queue, (when, next(self._seq), callback, handle, interval))

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _seq, callback, handle, interval = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self.now = when
            if interval is not None:
                self._push(when + interval, callback, handle, interval)
            callback()
        self.now = target

    def pending(self) -> int:
        return sum(1 for entry in self._queue if not entry[3].cancelled)


class AsyncioScheduler:
    """Scheduler backed by a running asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = self.loop.call_later(delay, callback)
        return TimerHandle(timer.cancel)

    def call_repeating(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")

        async def _run() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    callback()
                except Exception:
                    logger.exception("Repeating callback failed")

        task = self.loop.create_task(_run())
        return TimerHandle(task.cancel)
