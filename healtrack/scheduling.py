"""
Clock and periodic timer abstractions.

The session lifecycle never reads the system clock or creates timers
directly; it receives a Clock and a Scheduler so that tests can drive
virtual time.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional

from loguru import logger

TickCallback = Callable[[], Awaitable[None]]


class Clock(ABC):
    """Source of the current instant."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current timezone-aware instant."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class VirtualClock(Clock):
    """Manually advanced clock for tests."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, instant: datetime) -> None:
        self._now = instant

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now


class TimerHandle(ABC):
    """Handle for a periodic timer."""

    @property
    @abstractmethod
    def cancelled(self) -> bool: ...

    @abstractmethod
    def cancel(self) -> None:
        """Stop the timer. Safe to call more than once."""


class Scheduler(ABC):
    """Creates periodic timers."""

    @abstractmethod
    def call_every(self, interval: float, callback: TickCallback) -> TimerHandle:
        """Run ``callback`` every ``interval`` seconds until the handle is cancelled."""


# ============================================================================
# asyncio implementation
# ============================================================================


class _TaskTimerHandle(TimerHandle):
    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # A callback cancelling its own timer must finish its awaits; the loop exits on the flag.
        if self._task is not None and self._task is not current:
            self._task.cancel()


class AsyncioScheduler(Scheduler):
    """Scheduler backed by tasks on the running event loop."""

    def call_every(self, interval: float, callback: TickCallback) -> TimerHandle:
        handle = _TaskTimerHandle()
        handle._task = asyncio.get_running_loop().create_task(self._run(interval, callback, handle))
        return handle

    async def _run(self, interval: float, callback: TickCallback, handle: _TaskTimerHandle) -> None:
        while not handle.cancelled:
            await asyncio.sleep(interval)
            if handle.cancelled:
                break
            try:
                await callback()
            except Exception as e:
                logger.error(f"Periodic callback failed: {e}")


# ============================================================================
# Virtual time implementation
# ============================================================================


class _VirtualTimer(TimerHandle):
    def __init__(self, interval: float, callback: TickCallback, due: datetime):
        self.interval = interval
        self.callback = callback
        self.due = due
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class VirtualScheduler(Scheduler):
    """
    Scheduler driven by a VirtualClock.

    ``advance`` moves the clock forward and fires every timer that falls
    due along the way, in due order, with the clock set to each due instant.
    """

    def __init__(self, clock: VirtualClock):
        self.clock = clock
        self._timers: List[_VirtualTimer] = []

    @property
    def active_timers(self) -> int:
        return sum(1 for timer in self._timers if not timer.cancelled)

    def call_every(self, interval: float, callback: TickCallback) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        timer = _VirtualTimer(
            interval, callback, self.clock.now() + timedelta(seconds=interval)
        )
        self._timers.append(timer)
        return timer

    async def advance(self, seconds: float) -> None:
        target = self.clock.now() + timedelta(seconds=seconds)
        while True:
            self._timers = [timer for timer in self._timers if not timer.cancelled]
            due = [timer for timer in self._timers if timer.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.clock.set(timer.due)
            timer.due = timer.due + timedelta(seconds=timer.interval)
            await timer.callback()
        self.clock.set(target)
