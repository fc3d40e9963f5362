"""
Hydration reminders while sitting
"""

import logging
from typing import Callable

from config import HYDRATION_REMINDER_MINUTES
from database import ChairStore
from event_log import EventLog
from models import ChairState, EventType, Position
from scheduler import Scheduler, TimerSlot
from state_engine import TransitionListener
from utils import best_effort

logger = logging.getLogger(__name__)


class HydrationScheduler(TransitionListener):
    """
    One single-shot reminder timer per chair, armed on entering Sitting.
    Re-arming always cancels first, so at most one timer is ever armed.
    """

    def __init__(
        self,
        chair_id: str,
        store: ChairStore,
        event_log: EventLog,
        scheduler: Scheduler,
        sitting_seconds: Callable[[], int],
        delay_minutes: float = HYDRATION_REMINDER_MINUTES,
    ):
        self.chair_id = chair_id
        self.store = store
        self.event_log = event_log
        self.sitting_seconds = sitting_seconds
        self.delay_seconds = delay_minutes * 60.0
        self.slot = TimerSlot(scheduler, "hydration")
        self.alert_active = False
        self.reminders_fired = 0

    @property
    def armed(self) -> bool:
        return self.slot.armed

    def on_enter(self, state: ChairState, position: Position):
        if state == ChairState.SITTING:
            self.arm()

    def on_exit(self, state: ChairState, position: Position):
        if state == ChairState.SITTING:
            self.cancel()

    def arm(self):
        self.slot.arm(self.delay_seconds, self._fire)

    def cancel(self):
        self.slot.cancel()

    def _fire(self):
        seconds = self.sitting_seconds()
        self.alert_active = True
        self.reminders_fired += 1
        best_effort(
            "Hydration alert persist",
            self.store.update_chair, self.chair_id, {"hydration_alert": True},
        )
        self.event_log.append(EventType.HYDRATION_REMINDER, {
            "sittingSeconds": seconds,
            "sittingMinutes": round(seconds / 60.0, 2),
        })
        logger.info("Chair %s hydration reminder after %ss sitting", self.chair_id, seconds)

    def dismiss(self, still_sitting: bool = True) -> bool:
        """Clear the alert and start a new reminder interval. False if no alert was up."""
        if not self.alert_active:
            return False
        self.alert_active = False
        best_effort(
            "Hydration dismiss persist",
            self.store.update_chair, self.chair_id, {"hydration_alert": False},
        )
        self.event_log.append(EventType.HYDRATION_DISMISSED, {
            "sittingSeconds": self.sitting_seconds(),
        })
        self.cancel()
        if still_sitting:
            self.arm()
        return True

    def teardown(self):
        self.cancel()
