"""
Database setup and the durable chair store

Tables stand for the store paths:
    chair/{id}                                  -> chairs
    chair/{id}/state                            -> chairs.state / chairs.position
    chair/{id}/reports/{date}/summary           -> report_summaries
    chair/{id}/reports/{date}/events/{key}      -> report_events (autoincrement key)
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import (
    create_engine, Column, Integer, Float, String, DateTime, Boolean, JSON,
    UniqueConstraint, func,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import StaticPool

from config import DATABASE_URL
from errors import PersistenceError
from feed import Broadcaster, Subscription
from models import ChairState, Event, EventType, Position, ReportSummary

Base = declarative_base()


class ChairDB(Base):
    """Current snapshot and counters of one chair"""
    __tablename__ = "chairs"

    chair_id = Column(String, primary_key=True)
    state = Column(String, default=ChairState.UNKNOWN.value)
    position = Column(String, default=Position.UNKNOWN.value)
    snapshot = Column(JSON, default=dict)  # Last raw sensor reading
    session_minutes = Column(Float, default=0.0)  # Running minutes of the open session
    today_minutes = Column(Float, default=0.0)  # Accumulated minutes for the current date
    position_changes = Column(Integer, default=0)
    hydration_alert = Column(Boolean, default=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ReportSummaryDB(Base):
    """Day summary of one chair"""
    __tablename__ = "report_summaries"
    __table_args__ = (UniqueConstraint("chair_id", "date_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    chair_id = Column(String, index=True)
    date_key = Column(String, index=True)  # YYYY-MM-DD
    total_minutes = Column(Float, default=0.0)


class ReportEventDB(Base):
    """Event log entry; the autoincrement id is the ordered append key"""
    __tablename__ = "report_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    chair_id = Column(String, index=True)
    date_key = Column(String, index=True)
    type = Column(String)
    timestamp = Column(DateTime)
    payload = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)


CHAIR_FIELDS = (
    "state", "position", "snapshot", "session_minutes", "today_minutes",
    "position_changes", "hydration_alert",
)


def make_engine(url: str = DATABASE_URL):
    """Create an engine; in-memory SQLite shares one connection across threads"""
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url)


def init_db(bind):
    """Initialize the database - create all tables"""
    Base.metadata.create_all(bind=bind)


class ChairStore:
    """
    Durable store primitives: one-shot read, change subscription,
    overwrite, merge-update and atomic ordered append.

    Every failure surfaces as PersistenceError.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self.state_changes = Broadcaster("state changes")

    @classmethod
    def from_url(cls, url: str = DATABASE_URL) -> "ChairStore":
        bind = make_engine(url)
        init_db(bind)
        return cls(sessionmaker(autocommit=False, autoflush=False, bind=bind))

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"{action}: {e}") from e
        finally:
            db.close()

    # ---- chair/{id} ----

    def read_chair(self, chair_id: str) -> Optional[Dict[str, Any]]:
        with self._session("read chair") as db:
            row = db.get(ChairDB, chair_id)
            if row is None:
                return None
            data = {name: getattr(row, name) for name in CHAIR_FIELDS}
            data["chair_id"] = row.chair_id
            data["updated_at"] = row.updated_at
            return data

    def set_chair(self, chair_id: str, values: Dict[str, Any]):
        """Overwrite: fields not given are reset to their defaults"""
        self._check_fields(values)
        with self._session("set chair") as db:
            row = db.get(ChairDB, chair_id)
            if row is not None:
                db.delete(row)
                db.flush()
            db.add(ChairDB(chair_id=chair_id, **values))

    def update_chair(self, chair_id: str, values: Dict[str, Any]):
        """Merge-update: only the given fields change"""
        self._check_fields(values)
        with self._session("update chair") as db:
            row = db.get(ChairDB, chair_id)
            if row is None:
                row = ChairDB(chair_id=chair_id)
                db.add(row)
            for name, value in values.items():
                setattr(row, name, value)

    @staticmethod
    def _check_fields(values: Dict[str, Any]):
        unknown = set(values) - set(CHAIR_FIELDS)
        if unknown:
            raise ValueError(f"Unknown chair fields: {sorted(unknown)}")

    # ---- chair/{id}/state ----

    def set_state(self, chair_id: str, state: ChairState, position: Position):
        self.update_chair(chair_id, {"state": state.value, "position": position.value})
        self.state_changes.publish(chair_id, (state, position))

    def read_state(self, chair_id: str) -> Optional[Tuple[ChairState, Position]]:
        chair = self.read_chair(chair_id)
        if chair is None:
            return None
        return ChairState(chair["state"]), Position(chair["position"])

    def subscribe_state(self, chair_id: str, callback: Callable[[Tuple[ChairState, Position]], None]) -> Subscription:
        return self.state_changes.subscribe(chair_id, callback)

    # ---- chair/{id}/reports/{date}/summary ----

    def read_summary(self, chair_id: str, date_key: str) -> Optional[ReportSummary]:
        with self._session("read summary") as db:
            row = db.query(ReportSummaryDB).filter(
                ReportSummaryDB.chair_id == chair_id,
                ReportSummaryDB.date_key == date_key,
            ).first()
            if row is None:
                return None
            return ReportSummary(date=row.date_key, total_minutes=row.total_minutes or 0.0)

    def set_summary(self, chair_id: str, date_key: str, total_minutes: float):
        with self._session("set summary") as db:
            row = self._summary_row(db, chair_id, date_key)
            row.total_minutes = total_minutes

    @staticmethod
    def _summary_row(db: Session, chair_id: str, date_key: str) -> ReportSummaryDB:
        row = db.query(ReportSummaryDB).filter(
            ReportSummaryDB.chair_id == chair_id,
            ReportSummaryDB.date_key == date_key,
        ).first()
        if row is None:
            row = ReportSummaryDB(chair_id=chair_id, date_key=date_key, total_minutes=0.0)
            db.add(row)
        return row

    # ---- chair/{id}/reports/{date}/events ----

    def push_event(self, chair_id: str, date_key: str, event: Event) -> int:
        """Ordered append; the report day is created on its first event"""
        with self._session("push event") as db:
            self._summary_row(db, chair_id, date_key)
            row = ReportEventDB(
                chair_id=chair_id,
                date_key=date_key,
                type=event.type.value,
                timestamp=event.timestamp,
                payload=event.payload,
            )
            db.add(row)
            db.flush()
            return row.id

    def read_events(self, chair_id: str, date_key: str) -> List[Event]:
        with self._session("read events") as db:
            rows = db.query(ReportEventDB).filter(
                ReportEventDB.chair_id == chair_id,
                ReportEventDB.date_key == date_key,
            ).order_by(ReportEventDB.id.asc()).all()
            return [
                Event(key=r.id, type=EventType(r.type), timestamp=r.timestamp, payload=r.payload or {})
                for r in rows
            ]

    def list_reports(self, chair_id: str) -> List[Tuple[str, float, int]]:
        """(date_key, total_minutes, event_count) for every report day, newest first"""
        with self._session("list reports") as db:
            counts = dict(
                db.query(ReportEventDB.date_key, func.count(ReportEventDB.id))
                .filter(ReportEventDB.chair_id == chair_id)
                .group_by(ReportEventDB.date_key)
                .all()
            )
            rows = db.query(ReportSummaryDB).filter(
                ReportSummaryDB.chair_id == chair_id
            ).order_by(ReportSummaryDB.date_key.desc()).all()
            return [(r.date_key, r.total_minutes or 0.0, counts.get(r.date_key, 0)) for r in rows]

if __name__ == "__main__":
    # Run this file directly to initialize the database
    ChairStore.from_url(DATABASE_URL)
    print("Database initialized successfully!")
