"""
Timers for the chair monitor.

Every timer callback is handed to a dispatch function so it runs on the
monitor's worker thread, never on the timer thread itself.
"""

import threading
import time
from datetime import datetime
from typing import Callable, Optional

from utils import now_local


class TimerHandle:
    """A single armed timer"""

    def __init__(self, callback: Callable[[], None]):
        self.callback = callback
        self.cancelled = False
        self.fired = False
        self._timer: Optional[threading.Timer] = None

    @property
    def active(self) -> bool:
        return not self.cancelled and not self.fired

    def cancel(self):
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()

    def run(self):
        # A timer cancelled after it was dispatched must not run
        if not self.active:
            return
        self.fired = True
        self.callback()


class Scheduler:
    """Clock plus one-shot timers"""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError

    def monotonic(self) -> float:
        raise NotImplementedError

    def now(self) -> datetime:
        raise NotImplementedError


class ThreadingScheduler(Scheduler):
    """
    threading.Timer based scheduler.
    dispatch receives the fired handle's run method; the monitor passes
    its queue's put so callbacks are serialized with sensor updates.
    """

    def __init__(self, dispatch: Optional[Callable[[Callable[[], None]], None]] = None):
        self.dispatch = dispatch or (lambda fn: fn())

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(callback)
        timer = threading.Timer(max(delay, 0.0), lambda: self.dispatch(handle.run))
        timer.daemon = True
        handle._timer = timer
        timer.start()
        return handle

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return now_local()


class TimerSlot:
    """
    Holds at most one armed timer. arm() always cancels before re-arming.
    """

    def __init__(self, scheduler: Scheduler, name: str):
        self.scheduler = scheduler
        self.name = name
        self.handle: Optional[TimerHandle] = None
        self.expires_at: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self.handle is not None and self.handle.active

    def arm(self, delay: float, callback: Callable[[], None]):
        self.cancel()
        self.expires_at = self.scheduler.monotonic() + delay
        self.handle = self.scheduler.call_later(delay, callback)

    def cancel(self):
        if self.handle is not None:
            self.handle.cancel()
        self.handle = None
        self.expires_at = None

    def remaining(self) -> Optional[float]:
        if not self.armed or self.expires_at is None:
            return None
        return max(self.expires_at - self.scheduler.monotonic(), 0.0)
