from datetime import timedelta

import pytest

from event_log import calculate_daily_stats
from models import EventType
from utils import format_duration
from conftest import CHAIR_ID


def test_events_keep_append_order(event_log, store):
    first = event_log.append(EventType.PERSON_SITTING, {"position": "Balanced"})
    second = event_log.append(EventType.POSITION_CHANGE, {"from": "Balanced", "to": "Irregular", "count": 1})
    third = event_log.append(EventType.PERSON_LEFT)

    assert first.key < second.key < third.key
    report = event_log.report_day("2026-03-02")
    assert [e.type for e in report.events] == [
        EventType.PERSON_SITTING, EventType.POSITION_CHANGE, EventType.PERSON_LEFT,
    ]
    assert report.events[1].payload["to"] == "Irregular"


def test_report_day_is_created_by_first_event(event_log):
    assert event_log.report_day("2026-03-02") is None
    event_log.append(EventType.OBJECT_PLACED)

    report = event_log.report_day("2026-03-02")
    assert report.summary.total_minutes == 0.0
    assert len(report.events) == 1


def test_sitting_session_updates_summary(event_log, store):
    event_log.append(EventType.SITTING_SESSION, {"durationSeconds": 90, "totalMinutes": 12.5})
    assert store.read_summary(CHAIR_ID, "2026-03-02").total_minutes == 12.5
    assert event_log.summary("2026-03-02").total_minutes == 12.5


def test_other_events_leave_summary_alone(event_log, store):
    store.set_summary(CHAIR_ID, "2026-03-02", 7.0)
    event_log.append(EventType.HYDRATION_REMINDER, {"totalMinutes": 99})
    assert event_log.summary("2026-03-02").total_minutes == 7.0


def test_events_bucket_by_local_date(event_log, scheduler):
    event_log.append(EventType.PERSON_SITTING)
    scheduler.jump(timedelta(days=1))
    event_log.append(EventType.PERSON_LEFT)
    event_log.append(EventType.EMPTY)

    listing = event_log.list_reports()
    assert [item.date for item in listing] == ["2026-03-03", "2026-03-02"]
    assert [item.event_count for item in listing] == [2, 1]


def test_daily_report_stats(event_log):
    event_log.append(EventType.PERSON_SITTING)
    event_log.append(EventType.POSITION_CHANGE, {"count": 1})
    event_log.append(EventType.POSITION_CHANGE, {"count": 2})
    event_log.append(EventType.HYDRATION_REMINDER, {"sittingSeconds": 1200})
    event_log.append(EventType.TASKS_COMPLETED, {"completed": 3, "skipped": 1, "total": 4})
    event_log.append(EventType.SITTING_SESSION, {"durationSeconds": 3900, "totalMinutes": 65.0})

    report = event_log.daily_report("2026-03-02")
    assert report.stats.position_changes == 2
    assert report.stats.hydration_reminders == 1
    assert report.stats.sessions == 1
    assert report.stats.tasks_completed == 3
    assert report.formatted_duration == "1h 5m"


def test_daily_report_missing_day(event_log):
    assert event_log.daily_report("2020-01-01") is None


def test_append_survives_store_failure(event_log, store):
    store.fail_writes = True
    event = event_log.append(EventType.SITTING_SESSION, {"totalMinutes": 3.0})
    assert event.key is None
    assert event.type == EventType.SITTING_SESSION


def test_empty_stats():
    stats = calculate_daily_stats([])
    assert stats.position_changes == 0
    assert stats.tasks_completed == 0


@pytest.mark.parametrize("minutes,expected", [
    (0, "0m"),
    (42, "42m"),
    (42.4, "42m"),
    (60, "1h 0m"),
    (65, "1h 5m"),
    (59.7, "1h 0m"),
    (185 / 60, "3m"),
])
def test_format_duration(minutes, expected):
    assert format_duration(minutes) == expected
