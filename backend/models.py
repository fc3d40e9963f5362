"""
Data models for the Smart Chair Monitor
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class ChairState(str, Enum):
    """Occupancy states of a chair"""
    ABSENT = "absent"
    OBJECT_PLACED = "objectPlaced"
    SITTING = "sitting"
    UNKNOWN = "unknown"


class Position(str, Enum):
    """Fixed vocabulary of position labels"""
    EMPTY = "Empty"
    OBJECT_PLACED = "Object Placed"
    BALANCED = "Balanced"
    LEANING_LEFT = "Leaning Left"
    LEANING_RIGHT = "Leaning Right"
    FORWARD_SLOUCH = "Forward Slouch"
    SLOUCHING_BACK = "Slouching Back"
    IRREGULAR = "Irregular"
    UNKNOWN = "Unknown"


class EventType(str, Enum):
    """Report event types"""
    PERSON_SITTING = "personSitting"
    PERSON_LEFT = "personLeft"
    OBJECT_PLACED = "objectPlaced"
    OBJECT_REMOVED = "objectRemoved"
    EMPTY = "empty"
    EMPTY_REMOVED = "emptyRemoved"
    POSITION_CHANGE = "positionChange"
    SITTING_SESSION = "sittingSession"
    HYDRATION_REMINDER = "hydrationReminder"
    HYDRATION_DISMISSED = "hydrationDismissed"
    TASKS_COMPLETED = "tasksCompleted"
    TASK_COOLDOWN_STARTED = "taskCooldownStarted"
    TASK_COOLDOWN_ENDED = "taskCooldownEnded"
    AI_MODE_ENABLED = "aiModeEnabled"
    AI_MODE_DISABLED = "aiModeDisabled"
    AI_MODE_DISMISSED = "aiModeDismissed"


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskPhase(str, Enum):
    """Suggestion cycle phases"""
    IDLE = "idle"
    SUGGESTED = "suggested"
    IN_PROGRESS = "inProgress"
    COOLDOWN = "cooldown"


class SensorReading(BaseModel):
    """Raw reading pushed by the chair sensor board"""
    model_config = ConfigDict(populate_by_name=True)

    weight: Optional[float] = None  # kg, None when the board sent nothing usable
    left_arm: int = Field(0, alias="leftArm")  # 0 or 1
    right_arm: int = Field(0, alias="rightArm")
    left_leg: int = Field(0, alias="leftLeg")
    right_leg: int = Field(0, alias="rightLeg")
    timestamp: Optional[datetime] = None


class Classification(BaseModel):
    """Classifier output"""
    state: ChairState
    position: Position


class Event(BaseModel):
    """One entry of a day's report"""
    key: Optional[int] = None  # Ordered append key assigned by the store
    type: EventType
    timestamp: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)


class ReportSummary(BaseModel):
    date: str
    total_minutes: float = 0.0


class ReportDay(BaseModel):
    """Summary plus ordered events for one date key"""
    date_key: str
    summary: ReportSummary
    events: List[Event] = Field(default_factory=list)


class ReportListItem(BaseModel):
    """Row of the daily report listing"""
    date: str
    total_minutes: float
    formatted_duration: str
    event_count: int


class DailyStats(BaseModel):
    position_changes: int = 0
    hydration_reminders: int = 0
    sessions: int = 0
    tasks_completed: int = 0


class DailyReport(BaseModel):
    report: ReportDay
    stats: DailyStats
    formatted_duration: str


class BehaviorSample(BaseModel):
    """Periodic snapshot of session features used by the adaptive predictor"""
    timestamp: datetime
    weight: float
    position: Position
    sitting_duration: float  # minutes in the current session
    total_sitting_today: float  # minutes
    left_arm: bool
    right_arm: bool
    left_leg: bool
    right_leg: bool
    position_changes: int


class Task(BaseModel):
    """Health micro-task"""
    id: str
    title: str
    description: str
    duration_seconds: int
    priority: TaskPriority
    completed: bool = False
    personalized_reason: Optional[str] = None


class CooldownWindow(BaseModel):
    active: bool = False
    expires_at: Optional[datetime] = None


class TaskQueueView(BaseModel):
    """Task queue as exposed to the presentation layer"""
    phase: TaskPhase
    tasks: List[Task]
    current_index: int
    current_task: Optional[Task] = None
    countdown_remaining: Optional[float] = None  # seconds left on the task in progress
    cooldown: CooldownWindow
    recommendations_enabled: bool
    ai_mode: bool
    source: Optional[str] = None  # "rules" or "adaptive"


class CurrentStatus(BaseModel):
    """Current chair status for real-time display"""
    chair_id: str
    state: ChairState
    position: Position
    position_warning: Optional[str] = None
    weight: Optional[float] = None
    left_arm: bool = False
    right_arm: bool = False
    left_leg: bool = False
    right_leg: bool = False
    hydration_alert: bool = False
    last_update: Optional[datetime] = None


class SessionStats(BaseModel):
    """Sitting-time statistics for the current day"""
    date: str
    accumulated_minutes_today: float
    open_session_seconds: int
    total_minutes_today: float  # accumulated plus the open session
    position_changes: int
    formatted_duration: str


class ReadingAccepted(BaseModel):
    chair_id: str
    outcome: str  # what the state machine did with the reading
    state: ChairState
    position: Position


class TaskActionResult(BaseModel):
    ok: bool
    queue: TaskQueueView


class ToggleRequest(BaseModel):
    enabled: bool
