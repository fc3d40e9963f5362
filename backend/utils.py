import logging
from datetime import date, datetime
from typing import Any, Callable, Optional, Union

import pytz

from config import TIMEZONE
from errors import PersistenceError

logger = logging.getLogger(__name__)

LOCAL_TZ = pytz.timezone(TIMEZONE)


def to_local(dt: datetime) -> datetime:
    """Convert a naive or UTC datetime to the configured timezone.
    If naive, assume it's already local time.
    """
    if dt.tzinfo is None:
        # Treat naive datetime as local time
        return LOCAL_TZ.localize(dt)
    return dt.astimezone(LOCAL_TZ)


def now_local() -> datetime:
    """Get current time in the configured timezone."""
    return datetime.now(pytz.UTC).astimezone(LOCAL_TZ)


def date_key(value: Optional[Union[datetime, date]] = None) -> str:
    """Report key (YYYY-MM-DD) for a datetime, a date, or now."""
    if value is None:
        value = now_local()
    if isinstance(value, datetime):
        value = to_local(value).date()
    return value.isoformat()


def format_duration(minutes: float) -> str:
    """Format minutes as '1h 5m' or '42m'."""
    hours = int(minutes // 60)
    mins = int(round(minutes % 60))
    if mins == 60:
        hours += 1
        mins = 0
    if hours > 0:
        return f"{hours}h {mins}m"
    return f"{mins}m"


def best_effort(description: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a durable write; log and swallow persistence failures.
    Local state stays authoritative and nothing is retried.
    """
    try:
        return fn(*args, **kwargs)
    except PersistenceError as e:
        logger.warning("%s failed: %s", description, e)
        return None
