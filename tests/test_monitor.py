from datetime import timedelta

import pytest

from models import ChairState, Position, TaskPhase
from monitor import ChairMonitor, MonitorRegistry
from state_engine import DUPLICATE, PERSIST_RETRY, POSITION_CHANGE, TRANSITION
from conftest import CHAIR_ID, EMPTY, SITTING_BALANCED, SITTING_LEFT, event_types


def test_sitting_session_end_to_end(monitor, scheduler, store):
    monitor.handle_reading(SITTING_BALANCED)
    scheduler.advance(185)
    monitor.handle_reading(EMPTY)

    stats = monitor.session_stats()
    assert stats.accumulated_minutes_today == pytest.approx(185 / 60)
    assert stats.open_session_seconds == 0
    assert stats.formatted_duration == "3m"
    assert store.read_summary(CHAIR_ID, "2026-03-02").total_minutes == pytest.approx(185 / 60)
    assert event_types(store) == ["personSitting", "personLeft", "sittingSession", "empty"]


def test_feed_pushes_are_queued(monitor, feed):
    assert feed.push(CHAIR_ID, SITTING_BALANCED) == 1
    assert monitor.engine.state == ChairState.UNKNOWN

    assert monitor.run_pending() == 1
    assert monitor.status().state == ChairState.SITTING
    assert monitor.status().position == Position.BALANCED


def test_status_reports_posture_and_contacts(monitor, store):
    monitor.handle_reading(SITTING_BALANCED)
    assert monitor.handle_reading(SITTING_LEFT) == POSITION_CHANGE

    status = monitor.status()
    assert status.position == Position.LEANING_LEFT
    assert "left" in status.position_warning
    assert status.left_arm and not status.right_arm
    assert status.weight == 70
    assert monitor.session_stats().position_changes == 1
    assert store.read_chair(CHAIR_ID)["snapshot"]["leftArm"] == 1


def test_malformed_reading_moves_to_unknown(monitor):
    monitor.handle_reading(SITTING_BALANCED)
    monitor.handle_reading({"weight": "n/a"})
    assert monitor.engine.state == ChairState.UNKNOWN
    assert monitor.accountant.sitting is False


def test_hydration_alert_and_dismiss(monitor, scheduler, store):
    monitor.handle_reading(SITTING_BALANCED)
    scheduler.advance(300)
    assert monitor.status().hydration_alert is True

    assert monitor.dismiss_hydration() is True
    assert monitor.status().hydration_alert is False
    assert "hydrationDismissed" in event_types(store)
    assert monitor.hydration.armed


def test_tasks_start_after_dwell(monitor, scheduler):
    monitor.handle_reading(SITTING_BALANCED)
    scheduler.advance(119)
    assert monitor.task_queue().phase == TaskPhase.IDLE
    scheduler.advance(1)
    assert monitor.task_queue().phase == TaskPhase.SUGGESTED


def test_user_actions_drive_the_queue(monitor):
    monitor.handle_reading(SITTING_BALANCED)
    assert monitor.trigger_tasks() is True
    assert monitor.start_task() is not None
    assert monitor.skip_task() is True
    assert monitor.dismiss_tasks() is True
    assert monitor.task_queue().phase == TaskPhase.COOLDOWN
    assert monitor.trigger_tasks() is False

    monitor.set_ai_mode(False)
    monitor.set_recommendations_enabled(False)
    view = monitor.task_queue()
    assert view.ai_mode is False
    assert view.recommendations_enabled is False


def test_store_outage_then_retry(monitor, store):
    store.fail_writes = True
    assert monitor.handle_reading(SITTING_BALANCED) == TRANSITION
    assert monitor.engine.state == ChairState.SITTING

    store.fail_writes = False
    assert monitor.handle_reading(SITTING_BALANCED) == PERSIST_RETRY
    assert store.read_state(CHAIR_ID) == (ChairState.SITTING, Position.BALANCED)
    assert monitor.handle_reading(SITTING_BALANCED) == DUPLICATE


def test_restart_restores_todays_totals(monitor, store, feed, scheduler, settings):
    monitor.handle_reading(SITTING_BALANCED)
    monitor.handle_reading(SITTING_LEFT)
    scheduler.advance(120)
    monitor.handle_reading(EMPTY)
    monitor.stop()

    restarted = ChairMonitor(CHAIR_ID, store, feed, scheduler=scheduler, settings=settings)
    restarted.start(run_worker=False)
    try:
        stats = restarted.session_stats()
        assert stats.accumulated_minutes_today == pytest.approx(2.0)
        assert stats.position_changes == 1
        assert restarted.engine.last_persisted_state == ChairState.ABSENT
    finally:
        restarted.stop()


def test_rollover_resets_position_changes(monitor, scheduler):
    monitor.handle_reading(SITTING_BALANCED)
    monitor.handle_reading(SITTING_LEFT)
    scheduler.advance(60)
    monitor.handle_reading(EMPTY)

    scheduler.jump(timedelta(days=1))
    monitor.handle_reading(SITTING_BALANCED)

    stats = monitor.session_stats()
    assert stats.date == "2026-03-03"
    assert stats.accumulated_minutes_today == 0
    assert stats.position_changes == 0


def test_stop_releases_timers_and_subscription(monitor, feed, scheduler):
    monitor.handle_reading(SITTING_BALANCED)
    assert feed.subscriber_count(CHAIR_ID) == 1

    monitor.stop()
    assert feed.subscriber_count(CHAIR_ID) == 0
    assert scheduler.active_timers() == 0
    assert not monitor.predictor.is_ready


def test_behavior_samples_collected_while_sitting(monitor, scheduler):
    monitor.handle_reading(SITTING_BALANCED)
    scheduler.advance(180)
    samples = monitor.collector.samples()
    assert len(samples) == 3
    assert samples[-1].position == Position.BALANCED
    assert 2.9 < samples[-1].sitting_duration <= 3.0
    assert samples[-1].weight == 70


def test_worker_thread_processes_calls(store, settings):
    with ChairMonitor("threaded", store, settings=settings) as chair:
        assert chair.is_running
        assert chair.call(chair.handle_reading, SITTING_BALANCED) == TRANSITION
        assert chair.call(chair.status).state == ChairState.SITTING
    assert not chair.is_running


def test_registry_creates_one_monitor_per_chair(store, feed, settings):
    registry = MonitorRegistry(store, feed, settings=settings, run_workers=False)
    first = registry.get("7")
    assert registry.get(7) is first
    registry.get("8")
    assert registry.chair_ids() == ["7", "8"]

    registry.stop_all()
    assert registry.chair_ids() == []
    assert feed.subscriber_count() == 0


def test_stats_roll_over_while_chair_stays_empty(monitor, scheduler):
    monitor.handle_reading(SITTING_BALANCED)
    monitor.handle_reading(SITTING_LEFT)
    scheduler.advance(120)
    monitor.handle_reading(EMPTY)

    scheduler.jump(timedelta(days=1))
    assert monitor.handle_reading(EMPTY) == DUPLICATE
    assert monitor.accountant.date_key == "2026-03-03"
    assert monitor.engine.position_changes == 0

    stats = monitor.session_stats()
    assert stats.date == "2026-03-03"
    assert stats.accumulated_minutes_today == 0
    assert stats.position_changes == 0


def test_session_stats_notice_the_new_day(monitor, scheduler):
    monitor.handle_reading(EMPTY)
    scheduler.jump(timedelta(days=1))
    assert monitor.session_stats().date == "2026-03-03"
