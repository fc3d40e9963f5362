"""
Behavior sampling for the adaptive task predictor
"""

import logging
from collections import deque
from typing import Callable, Deque, List, Optional

from config import BEHAVIOR_BUFFER_SIZE, BEHAVIOR_SAMPLE_SECONDS
from models import BehaviorSample, ChairState, Position
from scheduler import Scheduler, TimerSlot
from state_engine import TransitionListener

logger = logging.getLogger(__name__)


class BehaviorCollector(TransitionListener):
    """
    Samples the session once per interval while Sitting and the predictor
    is ready. Samples live in a bounded ring buffer (oldest dropped) and
    are never persisted.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        snapshot: Callable[[], Optional[BehaviorSample]],
        is_ready: Callable[[], bool],
        interval_seconds: float = BEHAVIOR_SAMPLE_SECONDS,
        buffer_size: int = BEHAVIOR_BUFFER_SIZE,
    ):
        self.snapshot = snapshot
        self.is_ready = is_ready
        self.interval_seconds = interval_seconds
        self.buffer: Deque[BehaviorSample] = deque(maxlen=buffer_size)
        self.slot = TimerSlot(scheduler, "behavior sample")

    def __len__(self) -> int:
        return len(self.buffer)

    def on_enter(self, state: ChairState, position: Position):
        if state == ChairState.SITTING:
            self.start()

    def on_exit(self, state: ChairState, position: Position):
        if state == ChairState.SITTING:
            self.stop()

    def start(self):
        self.slot.arm(self.interval_seconds, self._on_timer)

    def stop(self):
        self.slot.cancel()

    def _on_timer(self):
        self.slot.arm(self.interval_seconds, self._on_timer)
        self.collect()

    def collect(self) -> Optional[BehaviorSample]:
        if not self.is_ready():
            return None
        sample = self.snapshot()
        if sample is not None:
            self.buffer.append(sample)
            logger.debug("Behavior sample %d/%d", len(self.buffer), self.buffer.maxlen)
        return sample

    def samples(self) -> List[BehaviorSample]:
        return list(self.buffer)

    def recent(self, count: int) -> List[BehaviorSample]:
        return list(self.buffer)[-count:]

    def teardown(self):
        self.stop()
