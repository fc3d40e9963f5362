"""
Sitting time accounting
"""

import logging
from typing import Callable, List

from config import PERSIST_EVERY_TICKS, SESSION_TICK_SECONDS
from database import ChairStore
from errors import PersistenceError
from event_log import EventLog
from models import ChairState, EventType, Position
from scheduler import Scheduler, TimerSlot
from state_engine import TransitionListener
from utils import best_effort, date_key

logger = logging.getLogger(__name__)


class SessionTimerAccountant(TransitionListener):
    """
    Counts seconds of the open sitting session and folds them into the
    day's total when the session ends.

    The running value is written every PERSIST_EVERY_TICKS ticks to keep
    the write rate down. Seconds of a session open at crash time are not
    recovered on restart; only the stored day total is.
    """

    def __init__(
        self,
        chair_id: str,
        store: ChairStore,
        event_log: EventLog,
        scheduler: Scheduler,
        tick_seconds: float = SESSION_TICK_SECONDS,
        persist_every: int = PERSIST_EVERY_TICKS,
    ):
        self.chair_id = chair_id
        self.store = store
        self.event_log = event_log
        self.scheduler = scheduler
        self.tick_seconds = tick_seconds
        self.persist_every = persist_every

        self.date_key: str = date_key(scheduler.now())
        self.accumulated_minutes_today: float = 0.0
        self.open_session_seconds: int = 0
        self.credited_seconds: int = 0  # Part of the open session already booked to an earlier day
        self.sitting = False
        self.slot = TimerSlot(scheduler, "session tick")

        self.tick_callbacks: List[Callable[[], None]] = []
        self.rollover_callbacks: List[Callable[[str], None]] = []

    @property
    def sitting_minutes(self) -> float:
        return self.open_session_seconds / 60.0

    @property
    def uncredited_minutes(self) -> float:
        """Open-session minutes that belong to the current date key"""
        return (self.open_session_seconds - self.credited_seconds) / 60.0

    @property
    def total_minutes_today(self) -> float:
        return self.accumulated_minutes_today + self.uncredited_minutes

    def restore(self) -> bool:
        """Load today's total from the durable report. Returns True if one existed."""
        self.date_key = date_key(self.scheduler.now())
        self.open_session_seconds = 0
        self.credited_seconds = 0
        try:
            summary = self.store.read_summary(self.chair_id, self.date_key)
        except PersistenceError as e:
            logger.warning("Could not restore sitting time for chair %s: %s", self.chair_id, e)
            summary = None

        self.accumulated_minutes_today = summary.total_minutes if summary else 0.0
        logger.info(
            "Chair %s restored %.2f sitting minutes for %s",
            self.chair_id, self.accumulated_minutes_today, self.date_key,
        )
        return summary is not None

    def on_enter(self, state: ChairState, position: Position):
        if state == ChairState.SITTING:
            self.start_session()

    def on_exit(self, state: ChairState, position: Position):
        if state == ChairState.SITTING:
            self.end_session()

    def start_session(self):
        self.check_rollover()
        self.sitting = True
        self.open_session_seconds = 0
        self.credited_seconds = 0
        self.slot.arm(self.tick_seconds, self._on_timer)

    def _on_timer(self):
        self.slot.arm(self.tick_seconds, self._on_timer)
        self.tick()

    def tick(self):
        """One second of sitting"""
        self.check_rollover()
        self.open_session_seconds += 1

        if self.open_session_seconds % self.persist_every == 0:
            best_effort(
                "Running session persist",
                self.store.update_chair, self.chair_id, {
                    "session_minutes": self.sitting_minutes,
                    "today_minutes": self.accumulated_minutes_today,
                },
            )

        for callback in self.tick_callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Session tick callback failed")

    def end_session(self) -> float:
        """Close the open session. Returns the minutes it added to today."""
        self.slot.cancel()
        self.sitting = False
        self.check_rollover()

        seconds = self.open_session_seconds
        minutes = self.uncredited_minutes
        self.accumulated_minutes_today += minutes
        self.open_session_seconds = 0
        self.credited_seconds = 0

        best_effort(
            "Session end persist",
            self.store.update_chair, self.chair_id, {
                "session_minutes": 0.0,
                "today_minutes": self.accumulated_minutes_today,
            },
        )
        if seconds > 0:
            # Writes the day summary through the event log
            self.event_log.append(EventType.SITTING_SESSION, {
                "durationSeconds": seconds,
                "durationMinutes": round(seconds / 60.0, 4),
                "totalMinutes": self.accumulated_minutes_today,
            })
        return minutes

    def check_rollover(self) -> bool:
        """
        Move to a new date key once the local date changes.

        The part of an open session sitting before midnight is booked to the
        old day's summary; the new day starts from zero. Returns True on rollover.
        """
        today = date_key(self.scheduler.now())
        if today == self.date_key:
            return False
        logger.info("Chair %s day rollover %s -> %s", self.chair_id, self.date_key, today)

        if self.open_session_seconds > self.credited_seconds:
            best_effort(
                "Previous day summary update",
                self.store.set_summary, self.chair_id, self.date_key,
                self.accumulated_minutes_today + self.uncredited_minutes,
            )
            self.credited_seconds = self.open_session_seconds

        self.date_key = today
        self.accumulated_minutes_today = 0.0
        for callback in self.rollover_callbacks:
            try:
                callback(today)
            except Exception:
                logger.exception("Rollover callback failed")
        return True

    def teardown(self):
        self.slot.cancel()
