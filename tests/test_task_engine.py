import pytest

from behavior import BehaviorCollector
from errors import ModelError
from models import ChairState, Position, TaskPhase, TaskPriority
from predictor import SequencePredictor
from task_engine import (
    PRIORITY_RANK, RecommendationContext, TaskRecommendationEngine, duration_class,
    rule_based_tasks, weight_class,
)
from conftest import event_types, make_sample


def context(position=Position.BALANCED, weight=75.0, minutes=10.0, limbs=(True, True, True, True)):
    return RecommendationContext(
        state=ChairState.SITTING,
        position=position,
        weight=weight,
        left_arm=limbs[0],
        right_arm=limbs[1],
        left_leg=limbs[2],
        right_leg=limbs[3],
        sitting_minutes=minutes,
        total_minutes_today=minutes,
        position_changes=2,
    )


def slugs(tasks):
    return [task.id.rsplit("-", 1)[0] for task in tasks]


class ScriptedPredictor(SequencePredictor):
    def __init__(self, probabilities=None, error=None):
        super().__init__()
        self.probabilities = probabilities
        self.error = error

    @property
    def is_ready(self):
        return True

    def predict(self, sequence):
        if self.error:
            raise self.error
        return self.probabilities


def full_collector(scheduler, count=5):
    counter = iter(range(100))
    collector = BehaviorCollector(scheduler, lambda: make_sample(next(counter)), lambda: True)
    for _ in range(count):
        collector.collect()
    return collector


@pytest.fixture
def ctx():
    return {"value": context()}


@pytest.fixture
def tasks(event_log, scheduler, ctx):
    engine = TaskRecommendationEngine(
        event_log, scheduler, lambda: ctx["value"],
        dwell_minutes=2, cooldown_minutes=1, rewind_seconds=5, retrain_minutes=10,
    )
    engine.on_enter(ChairState.SITTING, Position.BALANCED)
    return engine


# ---- rules ----

def test_weight_and_duration_classes():
    assert weight_class(59.9) == "light"
    assert weight_class(60) == "medium"
    assert weight_class(90) == "medium"
    assert weight_class(90.1) == "heavy"
    assert duration_class(29) == "short"
    assert duration_class(30) == "moderate"
    assert duration_class(60) == "moderate"
    assert duration_class(61) == "long"


def test_short_balanced_session():
    assert slugs(rule_based_tasks(context())) == ["stand-up", "hydration", "standing-side-stretch"]


def test_leaning_left_moderate_session_truncated_to_five():
    tasks = rule_based_tasks(context(Position.LEANING_LEFT, minutes=45, limbs=(True, False, True, False)))
    assert slugs(tasks) == ["stand-up", "hydration", "recenter-right", "standing-side-stretch", "calf-raises"]


def test_long_slouch_keeps_mandatory_tasks():
    tasks = rule_based_tasks(
        context(Position.FORWARD_SLOUCH, weight=100, minutes=90, limbs=(False, False, True, True))
    )
    assert len(tasks) == 5
    assert slugs(tasks)[:2] == ["stand-up", "hydration"]
    assert "chest-opener" in slugs(tasks)
    assert "circulation-walk" in slugs(tasks)
    ranks = [PRIORITY_RANK[t.priority] for t in tasks]
    assert ranks == sorted(ranks)


def test_missing_arm_contact_suggests_arm_activation():
    tasks = rule_based_tasks(context(Position.FORWARD_SLOUCH, limbs=(False, False, True, True)))
    assert "arm-activation" in slugs(tasks)


def test_task_ids_are_unique():
    tasks = rule_based_tasks(context()) + rule_based_tasks(context())
    assert len({t.id for t in tasks}) == len(tasks)


# ---- dwell and triggering ----

def test_auto_trigger_after_dwell(tasks, scheduler):
    scheduler.advance(119)
    assert tasks.check_auto_trigger() is False
    scheduler.advance(1)
    assert tasks.check_auto_trigger() is True
    assert tasks.phase == TaskPhase.SUGGESTED
    assert tasks.source == "rules"
    assert tasks.check_auto_trigger() is False


def test_position_change_restarts_dwell(tasks, scheduler):
    scheduler.advance(100)
    tasks.on_position_change(Position.BALANCED, Position.IRREGULAR)
    scheduler.advance(100)
    assert tasks.check_auto_trigger() is False
    scheduler.advance(20)
    assert tasks.check_auto_trigger() is True


def test_no_auto_trigger_after_leaving(tasks, scheduler):
    tasks.on_exit(ChairState.SITTING, Position.BALANCED)
    scheduler.advance(500)
    assert tasks.check_auto_trigger() is False


def test_disabled_recommendations_block_auto_trigger_only(tasks, scheduler):
    tasks.set_recommendations_enabled(False)
    scheduler.advance(500)
    assert tasks.check_auto_trigger() is False
    assert tasks.manual_trigger() is True


def test_manual_trigger_resets_dwell(tasks, scheduler):
    scheduler.advance(100)
    assert tasks.manual_trigger() is True
    assert tasks.dwell_elapsed() == 0


# ---- lifecycle ----

def test_full_cycle_into_cooldown_and_back(tasks, scheduler, store):
    assert tasks.manual_trigger() is True
    assert tasks.view().current_task.title == "Stand Up"

    started = tasks.start_task()
    assert tasks.phase == TaskPhase.IN_PROGRESS
    assert tasks.manual_trigger() is False

    scheduler.advance(started.duration_seconds)
    assert tasks.queue[0].completed
    assert tasks.current_index == 1
    assert tasks.phase == TaskPhase.SUGGESTED

    assert tasks.skip_task() is True
    assert tasks.current_index == 2

    tasks.start_task()
    assert tasks.complete_task() is True
    assert tasks.phase == TaskPhase.COOLDOWN
    assert tasks.cooldown.active
    assert tasks.manual_trigger() is False
    assert tasks.check_auto_trigger() is False

    scheduler.advance(60)
    assert tasks.phase == TaskPhase.IDLE
    assert not tasks.cooldown.active
    assert tasks.check_auto_trigger() is False

    scheduler.advance(5)
    assert tasks.check_auto_trigger() is True

    assert event_types(store) == ["tasksCompleted", "taskCooldownStarted", "taskCooldownEnded"]
    summary = store.read_events("chair-1", "2026-03-02")[0].payload
    assert summary["completed"] == 2
    assert summary["skipped"] == 1


def test_complete_requires_a_started_task(tasks):
    tasks.manual_trigger()
    assert tasks.complete_task() is False
    assert tasks.current_index == 0


def test_each_action_advances_by_one(tasks):
    tasks.manual_trigger()
    tasks.start_task()
    tasks.skip_task()
    assert tasks.current_index == 1
    assert tasks.countdown_slot.armed is False
    tasks.start_task()
    tasks.complete_task()
    assert tasks.current_index == 2


def test_dismiss_enters_cooldown(tasks, store):
    tasks.manual_trigger()
    assert tasks.dismiss() is True
    assert tasks.phase == TaskPhase.COOLDOWN
    assert event_types(store) == ["aiModeDismissed", "taskCooldownStarted"]
    assert tasks.dismiss() is False


def test_ai_mode_toggle_logs_changes_only(tasks, store):
    tasks.set_ai_mode(False)
    tasks.set_ai_mode(False)
    tasks.set_ai_mode(True)
    assert event_types(store) == ["aiModeDisabled", "aiModeEnabled"]


def test_teardown_cancels_timers(tasks, scheduler):
    tasks.manual_trigger()
    tasks.start_task()
    tasks.teardown()
    assert scheduler.active_timers() == 0


# ---- adaptive path ----

def test_adaptive_tasks_between_mandatory_ones(event_log, scheduler):
    predictor = ScriptedPredictor([0.05, 0.6, 0.1, 0.2, 0.05])
    engine = TaskRecommendationEngine(
        event_log, scheduler, lambda: context(Position.LEANING_RIGHT, limbs=(False, True, False, True)),
        predictor=predictor, collector=full_collector(scheduler),
    )
    queue, source = engine.generate()

    assert source == "adaptive"
    assert slugs(queue) == ["stand-up", "recenter-left", "balance-shift", "hydration"]
    assert all(t.personalized_reason for t in queue[1:3])
    assert queue[0].priority == TaskPriority.HIGH


def test_predictor_failure_falls_back_to_rules(event_log, scheduler):
    engine = TaskRecommendationEngine(
        event_log, scheduler, context,
        predictor=ScriptedPredictor(error=ModelError("busy")), collector=full_collector(scheduler),
    )
    assert engine.generate()[1] == "rules"


def test_rules_used_without_enough_samples_or_with_ai_off(event_log, scheduler):
    predictor = ScriptedPredictor([0.2] * 5)
    engine = TaskRecommendationEngine(
        event_log, scheduler, context, predictor=predictor, collector=full_collector(scheduler, 4),
    )
    assert engine.generate()[1] == "rules"

    engine.collector.collect()
    assert engine.generate()[1] == "adaptive"
    engine.set_ai_mode(False)
    assert engine.generate()[1] == "rules"


def test_retrain_needs_ten_samples(event_log, scheduler):
    predictor = SequencePredictor()
    predictor.init()
    predictor.bootstrap(count=50, epochs=20)
    collector = full_collector(scheduler, 9)
    engine = TaskRecommendationEngine(event_log, scheduler, context, predictor=predictor, collector=collector)

    assert engine.retrain() is False
    collector.collect()
    assert engine.retrain() is True
    assert predictor.train_runs == 2


def test_retraining_runs_on_a_timer(event_log, scheduler):
    predictor = SequencePredictor()
    predictor.init()
    predictor.bootstrap(count=50, epochs=20)
    engine = TaskRecommendationEngine(
        event_log, scheduler, context, predictor=predictor,
        collector=full_collector(scheduler, 12), retrain_minutes=10,
    )
    engine.start_retraining()
    scheduler.advance(1200)
    assert predictor.train_runs == 3


def test_view_exposes_countdown(tasks, scheduler):
    tasks.manual_trigger()
    assert tasks.view().countdown_remaining is None

    task = tasks.start_task()
    scheduler.advance(10)
    assert tasks.view().countdown_remaining == pytest.approx(task.duration_seconds - 10)

    tasks.skip_task()
    assert tasks.view().countdown_remaining is None
