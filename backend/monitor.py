"""
Per-chair monitor: wires classification, state machine, timers and
task suggestions behind a single-consumer message queue.
"""

import logging
import threading
from concurrent.futures import Future
from contextlib import ExitStack
from datetime import datetime
from queue import Empty, Queue
from typing import Any, Callable, Dict, Mapping, Optional, Union

from pydantic import BaseModel

import config
from behavior import BehaviorCollector
from classifier import classify, parse_reading, position_warning
from database import ChairStore
from errors import ClassificationError, ModelError, PersistenceError
from event_log import EventLog
from feed import SensorFeed, Subscription
from hydration import HydrationScheduler
from models import (
    BehaviorSample, ChairState, CurrentStatus, SensorReading, SessionStats, TaskQueueView,
)
from predictor import SequencePredictor
from scheduler import Scheduler, ThreadingScheduler
from session_timer import SessionTimerAccountant
from state_engine import StateTransitionEngine
from task_engine import RecommendationContext, TaskRecommendationEngine
from utils import best_effort, format_duration

logger = logging.getLogger(__name__)

_STOP = object()


class MonitorSettings(BaseModel):
    """Timing and sizing knobs of one monitor"""
    tick_seconds: float = config.SESSION_TICK_SECONDS
    persist_every_ticks: int = config.PERSIST_EVERY_TICKS
    hydration_minutes: float = config.HYDRATION_REMINDER_MINUTES
    dwell_minutes: float = config.POSTURE_DWELL_MINUTES
    cooldown_minutes: float = config.TASK_COOLDOWN_MINUTES
    rewind_seconds: float = config.COOLDOWN_REWIND_SECONDS
    sample_seconds: float = config.BEHAVIOR_SAMPLE_SECONDS
    buffer_size: int = config.BEHAVIOR_BUFFER_SIZE
    retrain_minutes: float = config.RETRAIN_INTERVAL_MINUTES
    max_tasks: int = config.MAX_TASKS
    bootstrap_sequences: int = config.BOOTSTRAP_SEQUENCES
    call_timeout_seconds: float = 5.0


class ChairMonitor:
    """
    Monitoring core of one chair.

    Sensor pushes, timer fires and user actions are all messages on one
    queue drained by one worker thread, so they never interleave.
    """

    def __init__(
        self,
        chair_id: str,
        store: ChairStore,
        feed: Optional[SensorFeed] = None,
        scheduler: Optional[Scheduler] = None,
        predictor: Optional[SequencePredictor] = None,
        settings: Optional[MonitorSettings] = None,
    ):
        self.chair_id = str(chair_id)
        self.store = store
        self.feed = feed
        self.settings = settings or MonitorSettings()
        self.scheduler = scheduler or ThreadingScheduler(self._post)
        self.owns_predictor = predictor is None
        self.predictor = predictor if predictor is not None else SequencePredictor()

        self.last_reading: Optional[SensorReading] = None
        self.last_update: Optional[datetime] = None

        self._queue: Queue = Queue()
        self._worker: Optional[threading.Thread] = None
        self._running = False
        self._stack = ExitStack()

        s = self.settings
        self.event_log = EventLog(self.chair_id, store, clock=self.scheduler.now)
        self.engine = StateTransitionEngine(self.chair_id, store, self.event_log)
        self.accountant = SessionTimerAccountant(
            self.chair_id, store, self.event_log, self.scheduler,
            tick_seconds=s.tick_seconds, persist_every=s.persist_every_ticks,
        )
        self.hydration = HydrationScheduler(
            self.chair_id, store, self.event_log, self.scheduler,
            sitting_seconds=lambda: self.accountant.open_session_seconds,
            delay_minutes=s.hydration_minutes,
        )
        self.collector = BehaviorCollector(
            self.scheduler, self._behavior_sample, lambda: self.predictor.is_ready,
            interval_seconds=s.sample_seconds, buffer_size=s.buffer_size,
        )
        self.tasks = TaskRecommendationEngine(
            self.event_log, self.scheduler, self._recommendation_context,
            predictor=self.predictor, collector=self.collector,
            dwell_minutes=s.dwell_minutes, cooldown_minutes=s.cooldown_minutes,
            rewind_seconds=s.rewind_seconds, retrain_minutes=s.retrain_minutes,
            max_tasks=s.max_tasks,
        )

        # The accountant runs first so a session is closed before anything else reacts
        for listener in (self.accountant, self.hydration, self.collector, self.tasks):
            self.engine.add_listener(listener)
        self.accountant.tick_callbacks.append(self.tasks.check_auto_trigger)
        self.accountant.rollover_callbacks.append(lambda _day: self.engine.reset_position_changes())

    # ---- lifecycle ----

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, run_worker: bool = True):
        """Restore today's totals, bootstrap the predictor, subscribe and start the worker"""
        self._restore()
        self._bootstrap_predictor()
        self.tasks.start_retraining()

        self._stack.callback(self._teardown_timers)
        if self.feed is not None:
            self._stack.enter_context(self.feed.subscribe(self.chair_id, self.push_reading))

        if run_worker:
            self._running = True
            self._worker = threading.Thread(
                target=self._run, name=f"chair-monitor-{self.chair_id}", daemon=True
            )
            self._worker.start()
        logger.info("Monitor for chair %s started", self.chair_id)

    def stop(self):
        """Stop the worker and release every timer and subscription"""
        if self._running:
            self._running = False
            self._queue.put(_STOP)
            if self._worker is not None:
                self._worker.join(timeout=2)
        self._worker = None
        self._stack.close()
        if self.owns_predictor:
            self.predictor.dispose()
        logger.info("Monitor for chair %s stopped", self.chair_id)

    def __enter__(self) -> "ChairMonitor":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    def _restore(self):
        restored_today = self.accountant.restore()
        try:
            chair = self.store.read_chair(self.chair_id)
        except PersistenceError as e:
            logger.warning("Could not read chair %s: %s", self.chair_id, e)
            chair = None
        if chair is None:
            return
        changes = chair.get("position_changes") or 0
        self.engine.restore(
            position_changes=changes if restored_today else 0,
            persisted_state=ChairState(chair["state"]) if chair.get("state") else None,
        )
        self.hydration.alert_active = bool(chair.get("hydration_alert"))

    def _bootstrap_predictor(self):
        if self.predictor.is_ready:
            return
        try:
            self.predictor.init()
            self.predictor.bootstrap(count=self.settings.bootstrap_sequences)
        except ModelError as e:
            logger.warning("Predictor bootstrap failed, suggestions use rules only: %s", e)

    def _teardown_timers(self):
        self.accountant.teardown()
        self.hydration.teardown()
        self.collector.teardown()
        self.tasks.teardown()

    # ---- message queue ----

    def _post(self, fn: Callable[[], Any]):
        self._queue.put(fn)

    def _run(self):
        while self._running:
            try:
                fn = self._queue.get(timeout=0.5)
            except Empty:
                continue
            if fn is _STOP:
                break
            self._run_message(fn)

    @staticmethod
    def _run_message(fn: Callable[[], Any]):
        try:
            fn()
        except Exception:
            logger.exception("Monitor message failed")

    def run_pending(self) -> int:
        """Drain queued messages on the calling thread. Returns how many ran."""
        count = 0
        while True:
            try:
                fn = self._queue.get_nowait()
            except Empty:
                return count
            if fn is _STOP:
                continue
            self._run_message(fn)
            count += 1

    def call(self, fn: Callable[..., Any], *args) -> Any:
        """Run fn on the worker and return its result"""
        if not self._running or threading.current_thread() is self._worker:
            self.run_pending()
            return fn(*args)

        future: Future = Future()

        def message():
            try:
                future.set_result(fn(*args))
            except Exception as e:
                future.set_exception(e)

        self._post(message)
        return future.result(timeout=self.settings.call_timeout_seconds)

    # ---- sensor input ----

    def push_reading(self, raw: Union[SensorReading, Mapping[str, Any]]):
        self._post(lambda: self.handle_reading(raw))

    def handle_reading(self, raw: Union[SensorReading, Mapping[str, Any]]) -> str:
        self.accountant.check_rollover()
        result = classify(raw)
        try:
            reading = parse_reading(raw)
        except ClassificationError:
            reading = None

        self.last_update = self.scheduler.now()
        if reading is not None:
            self.last_reading = reading
            best_effort(
                "Sensor snapshot persist",
                self.store.update_chair, self.chair_id,
                {"snapshot": reading.model_dump(mode="json", by_alias=True, exclude_none=True)},
            )
        return self.engine.process(result)

    # ---- derived views ----

    def _limbs(self) -> Dict[str, bool]:
        r = self.last_reading
        return {
            "left_arm": bool(r and r.left_arm),
            "right_arm": bool(r and r.right_arm),
            "left_leg": bool(r and r.left_leg),
            "right_leg": bool(r and r.right_leg),
        }

    def _behavior_sample(self) -> Optional[BehaviorSample]:
        if self.engine.state != ChairState.SITTING or self.last_reading is None:
            return None
        return BehaviorSample(
            timestamp=self.scheduler.now(),
            weight=self.last_reading.weight or 0.0,
            position=self.engine.position,
            sitting_duration=self.accountant.sitting_minutes,
            total_sitting_today=self.accountant.total_minutes_today,
            position_changes=self.engine.position_changes,
            **self._limbs(),
        )

    def _recommendation_context(self) -> RecommendationContext:
        return RecommendationContext(
            state=self.engine.state,
            position=self.engine.position,
            weight=(self.last_reading.weight or 0.0) if self.last_reading else 0.0,
            sitting_minutes=self.accountant.sitting_minutes,
            total_minutes_today=self.accountant.total_minutes_today,
            position_changes=self.engine.position_changes,
            **self._limbs(),
        )

    def status(self) -> CurrentStatus:
        return CurrentStatus(
            chair_id=self.chair_id,
            state=self.engine.state,
            position=self.engine.position,
            position_warning=position_warning(self.engine.position),
            weight=self.last_reading.weight if self.last_reading else None,
            hydration_alert=self.hydration.alert_active,
            last_update=self.last_update,
            **self._limbs(),
        )

    def session_stats(self) -> SessionStats:
        self.accountant.check_rollover()
        a = self.accountant
        return SessionStats(
            date=a.date_key,
            accumulated_minutes_today=a.accumulated_minutes_today,
            open_session_seconds=a.open_session_seconds,
            total_minutes_today=a.total_minutes_today,
            position_changes=self.engine.position_changes,
            formatted_duration=format_duration(a.total_minutes_today),
        )

    def task_queue(self) -> TaskQueueView:
        return self.tasks.view()

    def subscribe_state(self, callback) -> Subscription:
        return self.store.subscribe_state(self.chair_id, callback)

    # ---- user actions ----

    def trigger_tasks(self) -> bool:
        return self.call(self.tasks.manual_trigger)

    def start_task(self):
        return self.call(self.tasks.start_task)

    def complete_task(self) -> bool:
        return self.call(self.tasks.complete_task)

    def skip_task(self) -> bool:
        return self.call(self.tasks.skip_task)

    def dismiss_tasks(self) -> bool:
        return self.call(self.tasks.dismiss)

    def dismiss_hydration(self) -> bool:
        return self.call(lambda: self.hydration.dismiss(still_sitting=self.engine.state == ChairState.SITTING))

    def set_ai_mode(self, enabled: bool):
        return self.call(self.tasks.set_ai_mode, enabled)

    def set_recommendations_enabled(self, enabled: bool):
        return self.call(self.tasks.set_recommendations_enabled, enabled)


class MonitorRegistry:
    """Creates and starts one monitor per chair id on first use"""

    def __init__(self, store: ChairStore, feed: Optional[SensorFeed] = None,
                 settings: Optional[MonitorSettings] = None, run_workers: bool = True):
        self.store = store
        self.feed = feed
        self.settings = settings
        self.run_workers = run_workers
        self._lock = threading.Lock()
        self._monitors: Dict[str, ChairMonitor] = {}

    def get(self, chair_id: str) -> ChairMonitor:
        chair_id = str(chair_id)
        with self._lock:
            monitor = self._monitors.get(chair_id)
            if monitor is None:
                monitor = ChairMonitor(chair_id, self.store, self.feed, settings=self.settings)
                monitor.start(run_worker=self.run_workers)
                self._monitors[chair_id] = monitor
            return monitor

    def chair_ids(self):
        with self._lock:
            return sorted(self._monitors)

    def stop_all(self):
        with self._lock:
            monitors = list(self._monitors.values())
            self._monitors.clear()
        for monitor in monitors:
            monitor.stop()
