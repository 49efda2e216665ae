"""Scheduled-task abstraction used for auto-save, retries and timer ticks.

All callbacks run on a single cooperative scheduler: a callback runs to
completion before the next one starts. Callbacks may return an awaitable,
in which case the scheduler drives it on the event loop.

``AsyncioScheduler`` is used by the running application. ``ManualScheduler``
keeps a fake clock that only moves when ``advance`` is called, which makes
timer-driven behaviour deterministic in tests.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import heapq
import inspect
import itertools
import logging
import time
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]


class ScheduledTask:
    """Cancellation token for a scheduled callback."""

    __slots__ = ("_cancel", "_cancelled")

    def __init__(self, cancel: Callable[[], None]) -> None:
        self._cancel = cancel
        self._cancelled = False

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class Scheduler(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    def call_later(self, delay: float, callback: Callback) -> ScheduledTask: ...

    def call_every(self, interval: float, callback: Callback) -> ScheduledTask: ...


class AsyncioScheduler:
    """Scheduler backed by an asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._tasks: set[asyncio.Future[Any]] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callback) -> ScheduledTask:
        handle = self.loop.call_later(max(0.0, delay), self._run, callback)
        return ScheduledTask(handle.cancel)

    def call_every(self, interval: float, callback: Callback) -> ScheduledTask:
        if interval <= 0:
            raise ValueError("Interval must be positive.")
        state: dict[str, asyncio.TimerHandle | None] = {"handle": None}

        def cancel() -> None:
            if state["handle"] is not None:
                state["handle"].cancel()

        token = ScheduledTask(cancel)

        def tick() -> None:
            if token.cancelled:
                return
            state["handle"] = self.loop.call_later(interval, tick)
            self._run(callback)

        state["handle"] = self.loop.call_later(interval, tick)
        return token

    def _run(self, callback: Callback) -> None:
        try:
            result = callback()
        except Exception:
            logger.exception("Scheduled callback %r failed", callback)
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result, loop=self.loop)
            self._tasks.add(future)
            future.add_done_callback(self._on_task_done)

    def _on_task_done(self, future: asyncio.Future[Any]) -> None:
        self._tasks.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Scheduled coroutine failed", exc_info=future.exception())


class ManualScheduler:
    """Fake-clock scheduler; time only moves through ``advance``."""

    def __init__(self, start: datetime | None = None) -> None:
        self._start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._queue: list[tuple[float, int, _Entry]] = []
        self._sequence = itertools.count()

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def monotonic(self) -> float:
        return self._elapsed

    def call_later(self, delay: float, callback: Callback) -> ScheduledTask:
        entry = _Entry(callback, interval=None)
        self._push(self._elapsed + max(0.0, delay), entry)
        return ScheduledTask(entry.cancel)

    def call_every(self, interval: float, callback: Callback) -> ScheduledTask:
        if interval <= 0:
            raise ValueError("Interval must be positive.")
        entry = _Entry(callback, interval=interval)
        self._push(self._elapsed + interval, entry)
        return ScheduledTask(entry.cancel)

    @property
    def pending_count(self) -> int:
        return sum(1 for _, _, entry in self._queue if not entry.cancelled)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, running every callback that falls due.

        Callbacks returning awaitables must be driven with ``advance_async``.
        """
        for entry in self._due(seconds):
            result = entry.callback()
            if inspect.isawaitable(result):
                if inspect.iscoroutine(result):
                    result.close()
                raise RuntimeError("Callback returned an awaitable; use advance_async().")

    async def advance_async(self, seconds: float) -> None:
        for entry in self._due(seconds):
            result = entry.callback()
            if inspect.isawaitable(result):
                await result

    def _due(self, seconds: float):
        if seconds < 0:
            raise ValueError("Cannot move the clock backwards.")
        target = self._elapsed + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, entry = heapq.heappop(self._queue)
            if entry.cancelled:
                continue
            self._elapsed = due
            if entry.interval is not None:
                self._push(due + entry.interval, entry)
            yield entry
        self._elapsed = target

    def _push(self, due: float, entry: _Entry) -> None:
        heapq.heappush(self._queue, (due, next(self._sequence), entry))


class _Entry:
    __slots__ = ("callback", "interval", "cancelled")

    def __init__(self, callback: Callback, interval: float | None) -> None:
        self.callback = callback
        self.interval = interval
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
