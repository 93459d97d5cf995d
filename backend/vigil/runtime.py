"""
Host runtime scheduling.

Vigil never spawns its own threads. Periodic work rides on timer ticks
owned by the host runtime, expressed through the Scheduler protocol:

- AsyncioScheduler: repeating timers on an asyncio event loop
- ManualScheduler: the host (or a test) drives time via advance()

Timer callbacks that raise are logged and the timer keeps running.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional, Protocol

from .errors import SchedulerUnavailableError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
TimerCallback = Callable[[], None]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Timer-tick capability provided by the host runtime."""

    def now(self) -> float:
        ...

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        ...


def _run_tick(callback: TimerCallback) -> None:
    try:
        callback()
    except Exception as e:
        logger.warning(f"[VIGIL:RUNTIME] Timer callback {callback!r} failed: {e}")


class _AsyncioTimer:
    def __init__(self, loop: asyncio.AbstractEventLoop, interval: float, callback: TimerCallback):
        self._loop = loop
        self._interval = interval
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False
        self._schedule()

    def _schedule(self) -> None:
        self._handle = self._loop.call_later(self._interval, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        _run_tick(self._callback)
        if not self._cancelled:
            self._schedule()

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class AsyncioScheduler:
    """
    Scheduler backed by an asyncio event loop.

    Each call_every() chains loop.call_later() so a slow tick delays the
    next one instead of piling up. Without an explicit loop the scheduler
    binds to the loop running when it is first used, so the harness must
    be started from inside a coroutine.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None, clock: Clock = time.time):
        self._loop = loop
        self._clock = clock

    def bind(self) -> asyncio.AbstractEventLoop:
        """
        Resolve the loop timers will run on.

        Raises:
            SchedulerUnavailableError: No loop was given and none is running
        """
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError as e:
                raise SchedulerUnavailableError(
                    "AsyncioScheduler needs a running event loop: start the harness "
                    "from a coroutine, pass loop=..., or use ManualScheduler"
                ) from e
        return self._loop

    def now(self) -> float:
        return self._clock()

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        return _AsyncioTimer(self.bind(), interval, callback)


class _ManualTimer:
    def __init__(self, interval: float, callback: TimerCallback, next_due: float):
        self.interval = interval
        self.callback = callback
        self.next_due = next_due
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """
    Host-driven scheduler.

    Time only moves when advance() is called; due timers fire in due-time
    order with now() reporting each timer's due time while it runs.

    Usage:
        scheduler = ManualScheduler()
        scheduler.call_every(1.0, tick)
        scheduler.advance(5.0)   # tick runs five times
    """

    def __init__(self, start: Optional[float] = None):
        self._now = time.time() if start is None else start
        self._timers: List[_ManualTimer] = []

    def now(self) -> float:
        return self._now

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        if interval <= 0:
            raise ValueError(f"Timer interval must be positive: {interval}")
        timer = _ManualTimer(interval, callback, self._now + interval)
        self._timers.append(timer)
        return timer

    def advance(self, seconds: float) -> None:
        """Move time forward, firing every timer that comes due."""
        target = self._now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.next_due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.next_due)
            self._now = timer.next_due
            timer.next_due += timer.interval
            _run_tick(timer.callback)
        self._now = target
        self._timers = [t for t in self._timers if not t.cancelled]

    @property
    def active_timers(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)
