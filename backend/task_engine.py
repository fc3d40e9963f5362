"""
Health micro-task recommendations and the suggestion cycle

Two generation paths:
- rules: always available, driven by weight, session length, position
  and limb contact
- adaptive: the sequence predictor ranks task categories from recent
  behavior samples; used when AI mode is on and the predictor is ready

Any predictor failure falls back to the rules without surfacing.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional, Tuple

import numpy as np

from behavior import BehaviorCollector
from config import (
    COOLDOWN_REWIND_SECONDS,
    HEAVY_WEIGHT_KG,
    LIGHT_WEIGHT_KG,
    LONG_SITTING_MINUTES,
    MAX_TASKS,
    MIN_SAMPLES_FOR_PREDICTION,
    MIN_SAMPLES_FOR_RETRAIN,
    MODERATE_SITTING_MINUTES,
    POSTURE_DWELL_MINUTES,
    RETRAIN_INTERVAL_MINUTES,
    SEQUENCE_LENGTH,
    TASK_COOLDOWN_MINUTES,
)
from errors import ModelError
from event_log import EventLog
from models import (
    ChairState, CooldownWindow, EventType, Position, Task, TaskPhase, TaskPriority, TaskQueueView,
)
from predictor import SequencePredictor, TASK_CATEGORIES, encode_sequence, windows_from_samples
from scheduler import Scheduler, TimerSlot
from state_engine import TransitionListener

logger = logging.getLogger(__name__)


PRIORITY_RANK = {TaskPriority.HIGH: 0, TaskPriority.MEDIUM: 1, TaskPriority.LOW: 2}

# Task templates: (slug, title, description, duration seconds, priority)
STAND_UP = ("stand-up", "Stand Up", "Stand up and take a few steps away from the chair.", 60, TaskPriority.HIGH)
HYDRATION = ("hydration", "Drink Water", "Drink a glass of water before you sit back down.", 30, TaskPriority.HIGH)
MANDATORY = {STAND_UP[0], HYDRATION[0]}

STRETCH_TASKS = {
    "light": ("full-body-stretch", "Full Body Stretch",
              "Reach overhead for ten seconds, then fold forward toward your toes.", 120, TaskPriority.MEDIUM),
    "medium": ("standing-side-stretch", "Standing Side Stretch",
               "Raise one arm overhead and lean to the opposite side. Switch sides.", 90, TaskPriority.MEDIUM),
    "heavy": ("seated-stretch", "Gentle Seated Stretch",
              "Stay seated, extend each leg in turn and reach gently toward your toes.", 90, TaskPriority.MEDIUM),
}

CIRCULATION_TASKS = {
    "moderate": ("calf-raises", "Calf Raises",
                 "Stand and rise onto your toes fifteen times to get blood moving.", 60, TaskPriority.MEDIUM),
    "long": ("circulation-walk", "Circulation Walk",
             "Walk around for two minutes to restore circulation in your legs.", 120, TaskPriority.HIGH),
}

POSTURE_TASKS = {
    Position.LEANING_LEFT: ("recenter-right", "Re-center Your Weight",
                            "Shift your weight to the right until both sides of the seat carry the same load.",
                            30, TaskPriority.HIGH),
    Position.LEANING_RIGHT: ("recenter-left", "Re-center Your Weight",
                             "Shift your weight to the left until both sides of the seat carry the same load.",
                             30, TaskPriority.HIGH),
    Position.FORWARD_SLOUCH: ("chest-opener", "Chest Opener",
                              "Sit tall, clasp your hands behind your back and open your chest.", 45, TaskPriority.HIGH),
    Position.SLOUCHING_BACK: ("sit-upright", "Sit Upright",
                              "Scoot back, plant your feet flat and sit upright with your core engaged.",
                              30, TaskPriority.HIGH),
    Position.IRREGULAR: ("posture-reset", "Posture Reset",
                         "Plant both feet, rest both forearms and settle into a balanced position.",
                         30, TaskPriority.MEDIUM),
}

ARM_ACTIVATION = ("arm-activation", "Arm Activation",
                  "Roll your shoulders ten times and rest your forearms on the armrests.", 45, TaskPriority.MEDIUM)
LEG_ACTIVATION = ("leg-activation", "Leg Activation",
                  "Put both feet flat on the floor and do ten slow knee lifts.", 45, TaskPriority.MEDIUM)
BALANCE_SHIFT = ("balance-shift", "Balance Shift",
                 "Rock your weight slowly from side to side ten times, then settle in the center.",
                 45, TaskPriority.MEDIUM)

DEEP_BREATHING = ("deep-breathing", "Deep Breathing",
                  "Take five slow breaths: in for four seconds, out for six.", 60, TaskPriority.LOW)
EYE_RELIEF = ("eye-relief", "Eye Relief",
              "Look at something twenty feet away for twenty seconds.", 20, TaskPriority.LOW)

ADAPTIVE_TASKS = {
    "stretch": STRETCH_TASKS["medium"],
    "posture": ("posture-reset", "Posture Reset",
                "Sit back, feet flat, shoulders relaxed and both forearms supported.", 45, TaskPriority.HIGH),
    "circulation": CIRCULATION_TASKS["long"],
    "balance": BALANCE_SHIFT,
    "relaxation": DEEP_BREATHING,
}


@dataclass
class RecommendationContext:
    """What the engine knows about the sitter right now"""
    state: ChairState
    position: Position
    weight: float
    left_arm: bool
    right_arm: bool
    left_leg: bool
    right_leg: bool
    sitting_minutes: float
    total_minutes_today: float
    position_changes: int


def make_task(template: Tuple, reason: Optional[str] = None) -> Task:
    slug, title, description, duration, priority = template
    return Task(
        id=f"{slug}-{uuid.uuid4().hex[:8]}",
        title=title,
        description=description,
        duration_seconds=duration,
        priority=priority,
        personalized_reason=reason,
    )


def weight_class(weight: float) -> str:
    if weight < LIGHT_WEIGHT_KG:
        return "light"
    if weight > HEAVY_WEIGHT_KG:
        return "heavy"
    return "medium"


def duration_class(minutes: float) -> str:
    if minutes < MODERATE_SITTING_MINUTES:
        return "short"
    if minutes > LONG_SITTING_MINUTES:
        return "long"
    return "moderate"


def has_posture_issue(position: Position) -> bool:
    return position in POSTURE_TASKS


def has_limb_asymmetry(ctx: RecommendationContext) -> bool:
    return (ctx.left_arm + ctx.left_leg) != (ctx.right_arm + ctx.right_leg)


def rule_based_tasks(ctx: RecommendationContext, max_tasks: int = MAX_TASKS) -> List[Task]:
    """
    Candidate list from the rule tables, sorted high -> medium -> low and
    truncated. Stand-Up and Hydration always survive truncation.
    """
    duration = duration_class(ctx.sitting_minutes)
    candidates = [STAND_UP, STRETCH_TASKS[weight_class(ctx.weight)]]

    if duration in CIRCULATION_TASKS:
        candidates.append(CIRCULATION_TASKS[duration])

    if has_posture_issue(ctx.position):
        candidates.append(POSTURE_TASKS[ctx.position])

    if has_limb_asymmetry(ctx):
        candidates.append(BALANCE_SHIFT)
    elif not ctx.left_arm and not ctx.right_arm:
        candidates.append(ARM_ACTIVATION)
    elif not ctx.left_leg and not ctx.right_leg:
        candidates.append(LEG_ACTIVATION)

    candidates.append(HYDRATION)

    if duration == "long":
        candidates.extend([DEEP_BREATHING, EYE_RELIEF])

    candidates.sort(key=lambda t: (PRIORITY_RANK[t[4]], 0 if t[0] in MANDATORY else 1))
    return [make_task(t) for t in candidates[:max_tasks]]


def personalized_reason(category: str, probability: float, ctx: RecommendationContext) -> str:
    details = {
        "stretch": "your posture has been steady, a stretch keeps it that way",
        "posture": f"you have been sitting in a {ctx.position.value.lower()} position",
        "circulation": f"this session has lasted {ctx.sitting_minutes:.0f} minutes",
        "balance": "your limb contact has been uneven",
        "relaxation": f"you have shifted position {ctx.position_changes} times today",
    }
    return f"Picked from your recent sitting pattern ({probability:.0%} match): {details[category]}."


def adaptive_tasks(probabilities: np.ndarray, ctx: RecommendationContext) -> List[Task]:
    """Top two predicted categories between the mandatory Stand-Up and Hydration"""
    ranked = np.argsort(probabilities)[::-1][:2]
    tasks = [make_task(STAND_UP)]
    for index in ranked:
        category = TASK_CATEGORIES[int(index)]
        template = ADAPTIVE_TASKS[category]
        if category == "posture" and ctx.position in POSTURE_TASKS:
            template = POSTURE_TASKS[ctx.position]
        tasks.append(make_task(template, personalized_reason(category, float(probabilities[index]), ctx)))
    tasks.append(make_task(HYDRATION))
    return tasks


class TaskRecommendationEngine(TransitionListener):
    """
    Owns the task queue of one chair.

    Idle -> Suggested -> InProgress -> (Completed | Skipped) -> next task
    or Cooldown -> Idle. A cycle starts on its own after the sitter has
    held one position for the dwell threshold, or on a manual trigger.
    """

    def __init__(
        self,
        event_log: EventLog,
        scheduler: Scheduler,
        context: Callable[[], RecommendationContext],
        predictor: Optional[SequencePredictor] = None,
        collector: Optional[BehaviorCollector] = None,
        dwell_minutes: float = POSTURE_DWELL_MINUTES,
        cooldown_minutes: float = TASK_COOLDOWN_MINUTES,
        rewind_seconds: float = COOLDOWN_REWIND_SECONDS,
        retrain_minutes: float = RETRAIN_INTERVAL_MINUTES,
        max_tasks: int = MAX_TASKS,
    ):
        self.event_log = event_log
        self.scheduler = scheduler
        self.context = context
        self.predictor = predictor
        self.collector = collector
        self.dwell_seconds = dwell_minutes * 60.0
        self.cooldown_seconds = cooldown_minutes * 60.0
        self.rewind_seconds = min(rewind_seconds, self.dwell_seconds)
        self.retrain_seconds = retrain_minutes * 60.0
        self.max_tasks = max_tasks

        self.phase = TaskPhase.IDLE
        self.queue: List[Task] = []
        self.current_index = 0
        self.source: Optional[str] = None
        self.cooldown = CooldownWindow()
        self.recommendations_enabled = True
        self.ai_mode = True

        self.dwell_started: Optional[float] = None
        self.dwell_position: Optional[Position] = None

        self.countdown_slot = TimerSlot(scheduler, "task countdown")
        self.cooldown_slot = TimerSlot(scheduler, "task cooldown")
        self.retrain_slot = TimerSlot(scheduler, "predictor retrain")

    # ---- dwell tracking ----

    def on_enter(self, state: ChairState, position: Position):
        if state == ChairState.SITTING:
            self._reset_dwell(position)

    def on_exit(self, state: ChairState, position: Position):
        if state == ChairState.SITTING:
            self.dwell_started = None
            self.dwell_position = None

    def on_position_change(self, old: Position, new: Position):
        self._reset_dwell(new)

    def _reset_dwell(self, position: Optional[Position]):
        self.dwell_started = self.scheduler.monotonic()
        self.dwell_position = position

    def dwell_elapsed(self) -> float:
        if self.dwell_started is None:
            return 0.0
        return self.scheduler.monotonic() - self.dwell_started

    # ---- triggering ----

    @property
    def current_task(self) -> Optional[Task]:
        if self.phase in (TaskPhase.SUGGESTED, TaskPhase.IN_PROGRESS) and self.current_index < len(self.queue):
            return self.queue[self.current_index]
        return None

    def should_auto_trigger(self) -> bool:
        return (
            self.dwell_started is not None
            and self.dwell_elapsed() >= self.dwell_seconds
            and self.phase == TaskPhase.IDLE
            and self.recommendations_enabled
            and not self.cooldown.active
        )

    def check_auto_trigger(self) -> bool:
        if not self.should_auto_trigger():
            return False
        logger.info("Auto-starting task suggestions after %.0fs in %s", self.dwell_elapsed(),
                    self.dwell_position.value if self.dwell_position else "unknown")
        self._start_cycle()
        return True

    def manual_trigger(self) -> bool:
        """Start a cycle now. Respects cooldown; refused while a task runs."""
        if self.cooldown.active or self.phase in (TaskPhase.IN_PROGRESS, TaskPhase.COOLDOWN):
            return False
        if self.dwell_started is not None:
            self._reset_dwell(self.dwell_position)
        self._start_cycle()
        return True

    def _start_cycle(self):
        self.queue, self.source = self.generate()
        self.current_index = 0
        self.phase = TaskPhase.SUGGESTED if self.queue else TaskPhase.IDLE

    # ---- generation ----

    def generate(self) -> Tuple[List[Task], str]:
        ctx = self.context()
        if self._adaptive_available():
            try:
                probabilities = self.predictor.predict(
                    encode_sequence(self.collector.recent(SEQUENCE_LENGTH), SEQUENCE_LENGTH)
                )
                return adaptive_tasks(probabilities, ctx), "adaptive"
            except ModelError as e:
                logger.warning("Adaptive suggestions unavailable, using rules: %s", e)
        return rule_based_tasks(ctx, self.max_tasks), "rules"

    def _adaptive_available(self) -> bool:
        return (
            self.ai_mode
            and self.predictor is not None
            and self.collector is not None
            and self.predictor.is_ready
            and len(self.collector) >= MIN_SAMPLES_FOR_PREDICTION
        )

    # ---- task lifecycle ----

    def start_task(self) -> Optional[Task]:
        task = self.current_task
        if self.phase != TaskPhase.SUGGESTED or task is None:
            return None
        self.phase = TaskPhase.IN_PROGRESS
        self.countdown_slot.arm(task.duration_seconds, self._countdown_finished)
        return task

    def _countdown_finished(self):
        self.complete_task()

    def complete_task(self) -> bool:
        task = self.current_task
        if self.phase != TaskPhase.IN_PROGRESS or task is None:
            return False
        self.countdown_slot.cancel()
        task.completed = True
        self._advance()
        return True

    def skip_task(self) -> bool:
        if self.current_task is None:
            return False
        self.countdown_slot.cancel()
        self._advance()
        return True

    def _advance(self):
        self.current_index += 1
        if self.current_index < len(self.queue):
            self.phase = TaskPhase.SUGGESTED
            return

        completed = sum(1 for t in self.queue if t.completed)
        self.event_log.append(EventType.TASKS_COMPLETED, {
            "completed": completed,
            "skipped": len(self.queue) - completed,
            "total": len(self.queue),
            "source": self.source,
        })
        self._start_cooldown()

    def dismiss(self) -> bool:
        """Abandon the pending queue and cool down"""
        if self.phase not in (TaskPhase.SUGGESTED, TaskPhase.IN_PROGRESS):
            return False
        self.countdown_slot.cancel()
        self.event_log.append(EventType.AI_MODE_DISMISSED, {
            "remaining": len(self.queue) - self.current_index,
            "source": self.source,
        })
        self._start_cooldown()
        return True

    def _start_cooldown(self):
        self.phase = TaskPhase.COOLDOWN
        self.cooldown = CooldownWindow(
            active=True,
            expires_at=self.scheduler.now() + timedelta(seconds=self.cooldown_seconds),
        )
        self.cooldown_slot.arm(self.cooldown_seconds, self._end_cooldown)
        self.event_log.append(EventType.TASK_COOLDOWN_STARTED, {
            "expiresAt": self.cooldown.expires_at.isoformat(),
            "seconds": self.cooldown_seconds,
        })

    def _end_cooldown(self):
        self.cooldown = CooldownWindow()
        self.phase = TaskPhase.IDLE
        self.queue = []
        self.current_index = 0
        if self.dwell_started is not None:
            # Short debounce: the next cycle may start rewind_seconds from now
            self.dwell_started = self.scheduler.monotonic() - self.dwell_seconds + self.rewind_seconds
        self.event_log.append(EventType.TASK_COOLDOWN_ENDED, {})

    # ---- modes ----

    def set_ai_mode(self, enabled: bool):
        if enabled == self.ai_mode:
            return
        self.ai_mode = enabled
        self.event_log.append(EventType.AI_MODE_ENABLED if enabled else EventType.AI_MODE_DISABLED, {})

    def set_recommendations_enabled(self, enabled: bool):
        self.recommendations_enabled = enabled

    # ---- predictor maintenance ----

    def start_retraining(self):
        if self.predictor is not None and self.collector is not None:
            self.retrain_slot.arm(self.retrain_seconds, self._on_retrain_timer)

    def _on_retrain_timer(self):
        self.retrain_slot.arm(self.retrain_seconds, self._on_retrain_timer)
        self.retrain()

    def retrain(self) -> bool:
        """Incremental training on the real buffer once it holds enough samples"""
        if self.predictor is None or self.collector is None:
            return False
        if len(self.collector) < MIN_SAMPLES_FOR_RETRAIN:
            return False
        x, y = windows_from_samples(self.collector.samples(), SEQUENCE_LENGTH)
        try:
            self.predictor.train(x, y, epochs=100)
        except ModelError as e:
            logger.warning("Predictor retraining failed: %s", e)
            return False
        return True

    def view(self) -> TaskQueueView:
        return TaskQueueView(
            phase=self.phase,
            tasks=list(self.queue),
            current_index=self.current_index,
            current_task=self.current_task,
            countdown_remaining=self.countdown_slot.remaining(),
            cooldown=self.cooldown,
            recommendations_enabled=self.recommendations_enabled,
            ai_mode=self.ai_mode,
            source=self.source,
        )

    def teardown(self):
        self.countdown_slot.cancel()
        self.cooldown_slot.cancel()
        self.retrain_slot.cancel()
