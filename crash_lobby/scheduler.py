# scheduler.py
"""
Timer Scheduler – single-shot delayed callbacks.

- AsyncioScheduler: real event loop timers (production)
- ManualScheduler: virtual clock, advanced explicitly (tests, simulations)

Callbacks are coroutine functions. Serialization against round mutations is
the coordinator's job (its lock); the scheduler only guarantees a callback
runs at most once, no earlier than its delay, and never after cancel().
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple

logger = logging.getLogger("crash_lobby.scheduler")

Callback = Callable[[], Awaitable[Any]]


class TimerHandle:
    __slots__ = ("name", "due", "callback", "fired", "cancelled", "_timer")

    def __init__(self, name: str, due: float, callback: Callback) -> None:
        self.name = name
        self.due = due
        self.callback = callback
        self.fired = False
        self.cancelled = False
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return not (self.fired or self.cancelled)

    def __repr__(self) -> str:
        state = "fired" if self.fired else "cancelled" if self.cancelled else "pending"
        return f"<TimerHandle {self.name} due={self.due:.3f} {state}>"


class TimerScheduler:
    """Interface shared by the real and the manual scheduler."""

    def now(self) -> float:
        """Monotonic clock, seconds."""
        raise NotImplementedError

    def schedule(self, delay_ms: int, callback: Callback, name: str = "timer") -> TimerHandle:
        raise NotImplementedError

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is None or not handle.pending:
            return
        handle.cancelled = True
        if handle._timer is not None:
            handle._timer.cancel()
        logger.debug(f"Cancelled {handle!r}")


class AsyncioScheduler(TimerScheduler):
    """
    Timers on the running event loop. Each firing runs as its own task so a
    slow callback never delays the loop's request handling.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self._handles: Set[TimerHandle] = set()

    def now(self) -> float:
        return time.monotonic()

    def schedule(self, delay_ms: int, callback: Callback, name: str = "timer") -> TimerHandle:
        loop = asyncio.get_running_loop()
        delay = max(delay_ms, 0) / 1000
        handle = TimerHandle(name, self.now() + delay, callback)
        handle._timer = loop.call_later(delay, self._fire, handle)
        self._handles.add(handle)
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        super().cancel(handle)
        if handle is not None:
            self._handles.discard(handle)

    def _fire(self, handle: TimerHandle) -> None:
        self._handles.discard(handle)
        if not handle.pending:
            return
        handle.fired = True
        task = asyncio.ensure_future(handle.callback())
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Timer callback failed", exc_info=exc)

    async def close(self) -> None:
        """Cancel pending timers and wait for running callbacks to stop."""
        for handle in list(self._handles):
            self.cancel(handle)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class ManualScheduler(TimerScheduler):
    """
    Virtual clock. Nothing fires until advance() is awaited; due callbacks
    then run one after another, in due order (ties in scheduling order),
    with the clock set to each callback's due time.
    """

    def __init__(self, start_ms: int = 0) -> None:
        # Integer milliseconds so due times compare exactly
        self._now_ms = start_ms
        self._seq = itertools.count()
        self._queue: List[Tuple[int, int, TimerHandle]] = []

    def now(self) -> float:
        return self._now_ms / 1000

    def schedule(self, delay_ms: int, callback: Callback, name: str = "timer") -> TimerHandle:
        due_ms = self._now_ms + max(int(delay_ms), 0)
        handle = TimerHandle(name, due_ms / 1000, callback)
        heapq.heappush(self._queue, (due_ms, next(self._seq), handle))
        return handle

    @property
    def pending(self) -> List[TimerHandle]:
        return [h for _, _, h in sorted(self._queue, key=lambda item: item[:2]) if h.pending]

    async def advance(self, ms: int) -> int:
        """
        Move the clock forward by ms, firing everything that becomes due,
        including timers scheduled by the callbacks themselves.

        Returns:
            Number of callbacks run.
        """
        return await self._run_until(self._now_ms + int(ms))

    async def run_all(self, limit: int = 100) -> int:
        """Fire pending timers until none are left (bounded by limit)."""
        fired = 0
        while fired < limit:
            self._drop_inactive()
            if not self._queue:
                break
            fired += await self._run_until(self._queue[0][0])
        return fired

    def _drop_inactive(self) -> None:
        while self._queue and not self._queue[0][2].pending:
            heapq.heappop(self._queue)

    async def _run_until(self, target_ms: int) -> int:
        fired = 0
        while self._queue and self._queue[0][0] <= target_ms:
            due_ms, _, handle = heapq.heappop(self._queue)
            if not handle.pending:
                continue
            self._now_ms = max(self._now_ms, due_ms)
            handle.fired = True
            await handle.callback()
            fired += 1
        self._now_ms = max(self._now_ms, target_ms)
        return fired
