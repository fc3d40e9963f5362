"""Shared fixtures for the chair monitor tests.

- FakeScheduler: manual clock; advance() fires due timers in order
- store: isolated in-memory SQLite ChairStore per test
- monitor: ChairMonitor on the fake scheduler, drained with run_pending()
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Tuple

import pytest

from database import ChairStore
from errors import PersistenceError
from event_log import EventLog
from feed import SensorFeed
from models import BehaviorSample, Position
from monitor import ChairMonitor, MonitorSettings
from scheduler import Scheduler, TimerHandle
from utils import LOCAL_TZ

CHAIR_ID = "chair-1"


class FakeScheduler(Scheduler):
    """Deterministic clock. Wall time and monotonic time move together."""

    def __init__(self, start: datetime = None):
        self._now = start or LOCAL_TZ.localize(datetime(2026, 3, 2, 9, 0, 0))
        self._mono = 0.0
        self._seq = 0
        self._timers: List[Tuple[float, int, TimerHandle]] = []

    def call_later(self, delay, callback) -> TimerHandle:
        handle = TimerHandle(callback)
        self._seq += 1
        self._timers.append((self._mono + delay, self._seq, handle))
        return handle

    def monotonic(self) -> float:
        return self._mono

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float):
        target = self._mono + seconds
        while True:
            due = [t for t in self._timers if t[2].active and t[0] <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t[0], t[1]))
            self._timers.remove(timer)
            self._move_to(timer[0])
            timer[2].run()
        self._move_to(target)
        self._timers = [t for t in self._timers if t[2].active]

    def jump(self, delta: timedelta):
        """Move wall time only (e.g. past midnight) without firing timers"""
        self._now += delta

    def active_timers(self) -> int:
        return sum(1 for t in self._timers if t[2].active)

    def _move_to(self, mono: float):
        if mono > self._mono:
            self._now += timedelta(seconds=mono - self._mono)
            self._mono = mono


class FlakyStore(ChairStore):
    """ChairStore whose writes can be switched to fail"""

    fail_writes = False

    def _maybe_fail(self):
        if self.fail_writes:
            raise PersistenceError("store unavailable")

    def update_chair(self, chair_id, values):
        self._maybe_fail()
        super().update_chair(chair_id, values)

    def set_summary(self, chair_id, date_key, total_minutes):
        self._maybe_fail()
        super().set_summary(chair_id, date_key, total_minutes)

    def push_event(self, chair_id, date_key, event):
        self._maybe_fail()
        return super().push_event(chair_id, date_key, event)


def reading(weight: Any = 70, left_arm=1, right_arm=1, left_leg=1, right_leg=1) -> Dict[str, Any]:
    """Raw reading as the sensor board sends it"""
    return {
        "weight": weight,
        "leftArm": left_arm,
        "rightArm": right_arm,
        "leftLeg": left_leg,
        "rightLeg": right_leg,
    }


SITTING_BALANCED = reading(70, 1, 1, 1, 1)
SITTING_LEFT = reading(70, 1, 0, 1, 0)
SITTING_SLOUCH = reading(70, 0, 0, 1, 1)
OBJECT = reading(5, 0, 0, 0, 0)
EMPTY = reading(0, 0, 0, 0, 0)


def make_sample(index: int = 0, position: Position = Position.BALANCED, minutes: float = 10.0,
                limbs=(True, True, True, True), weight: float = 72.0) -> BehaviorSample:
    return BehaviorSample(
        timestamp=LOCAL_TZ.localize(datetime(2026, 3, 2, 9, 0, 0)) + timedelta(minutes=index),
        weight=weight,
        position=position,
        sitting_duration=minutes + index,
        total_sitting_today=minutes + index,
        left_arm=limbs[0],
        right_arm=limbs[1],
        left_leg=limbs[2],
        right_leg=limbs[3],
        position_changes=index,
    )


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def store() -> FlakyStore:
    return FlakyStore.from_url("sqlite://")


@pytest.fixture
def event_log(store, scheduler) -> EventLog:
    return EventLog(CHAIR_ID, store, clock=scheduler.now)


@pytest.fixture
def settings() -> MonitorSettings:
    return MonitorSettings(
        hydration_minutes=5,
        dwell_minutes=2,
        cooldown_minutes=1,
        rewind_seconds=5,
        sample_seconds=60,
        retrain_minutes=10,
        bootstrap_sequences=200,
    )


@pytest.fixture
def feed() -> SensorFeed:
    return SensorFeed()


@pytest.fixture
def monitor(store, feed, scheduler, settings):
    chair_monitor = ChairMonitor(CHAIR_ID, store, feed, scheduler=scheduler, settings=settings)
    chair_monitor.start(run_worker=False)
    yield chair_monitor
    chair_monitor.stop()


def event_types(store, day: str = "2026-03-02") -> List[str]:
    return [e.type.value for e in store.read_events(CHAIR_ID, day)]
