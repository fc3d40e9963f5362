"""
Per-day event log and report writer
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from database import ChairStore
from errors import PersistenceError
from models import DailyReport, DailyStats, Event, EventType, ReportDay, ReportListItem, ReportSummary
from utils import best_effort, date_key, format_duration, now_local

logger = logging.getLogger(__name__)


def calculate_daily_stats(events: List[Event]) -> DailyStats:
    """Count the notable events of one day"""
    stats = DailyStats()
    for event in events:
        if event.type == EventType.POSITION_CHANGE:
            stats.position_changes += 1
        elif event.type == EventType.HYDRATION_REMINDER:
            stats.hydration_reminders += 1
        elif event.type == EventType.SITTING_SESSION:
            stats.sessions += 1
        elif event.type == EventType.TASKS_COMPLETED:
            stats.tasks_completed += event.payload.get("completed", 0)
    return stats


class EventLog:
    """
    Append-only event log of one chair, bucketed by date key.

    Ordering comes from the store's ordered append, so concurrent writers
    (timer ticks and sensor pushes) never reorder entries. sittingSession
    events carrying totalMinutes also write the day summary.
    """

    def __init__(self, chair_id: str, store: ChairStore, clock: Callable[[], datetime] = now_local):
        self.chair_id = chair_id
        self.store = store
        self.clock = clock

    def append(self, event_type: EventType, payload: Optional[Dict[str, Any]] = None) -> Event:
        timestamp = self.clock()
        key = date_key(timestamp)
        event = Event(type=event_type, timestamp=timestamp, payload=payload or {})

        try:
            event.key = self.store.push_event(self.chair_id, key, event)
        except PersistenceError as e:
            logger.warning("Event %s for chair %s not persisted: %s", event_type.value, self.chair_id, e)

        if event_type == EventType.SITTING_SESSION and "totalMinutes" in event.payload:
            best_effort(
                "Day summary update",
                self.store.set_summary, self.chair_id, key, float(event.payload["totalMinutes"]),
            )

        logger.debug("Chair %s event %s %s", self.chair_id, event_type.value, event.payload)
        return event

    def report_day(self, day: str) -> Optional[ReportDay]:
        summary = self.store.read_summary(self.chair_id, day)
        if summary is None:
            return None
        return ReportDay(date_key=day, summary=summary, events=self.store.read_events(self.chair_id, day))

    def daily_report(self, day: str) -> Optional[DailyReport]:
        report = self.report_day(day)
        if report is None:
            return None
        return DailyReport(
            report=report,
            stats=calculate_daily_stats(report.events),
            formatted_duration=format_duration(report.summary.total_minutes),
        )

    def list_reports(self) -> List[ReportListItem]:
        """All report days, newest first"""
        return [
            ReportListItem(
                date=day,
                total_minutes=total,
                formatted_duration=format_duration(total),
                event_count=count,
            )
            for day, total, count in self.store.list_reports(self.chair_id)
        ]

    def summary(self, day: str) -> ReportSummary:
        found = self.store.read_summary(self.chair_id, day)
        return found or ReportSummary(date=day, total_minutes=0.0)
