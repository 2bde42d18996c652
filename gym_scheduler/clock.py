# clock.py
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Protocol, Tuple, Union

from gym_scheduler.errors import ValidationError


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """A clock that only moves when told to. Used by tests and replays."""

    def __init__(self, instant: datetime):
        self._instant = ensure_utc(instant)

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime):
        self._instant = ensure_utc(instant)

    def advance(self, **kwargs):
        self._instant = self._instant + timedelta(**kwargs)


def ensure_utc(value: datetime) -> datetime:
    """Returns `value` converted to UTC. Naive datetimes are refused, never guessed."""
    if not isinstance(value, datetime):
        raise ValidationError(f"Expected a datetime, got {type(value).__name__}")
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(f"Datetime {value.isoformat()} has no timezone")
    return value.astimezone(timezone.utc)


def from_storage(value: Optional[datetime]) -> Optional[datetime]:
    """Tags datetimes read back from storage as UTC; sqlite drops tzinfo on the way in."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: datetime) -> datetime:
    return ensure_utc(value)


def _midnight(day: Union[date, datetime]) -> datetime:
    if isinstance(day, datetime):
        day = ensure_utc(day).date()
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def day_bounds(day: Union[date, datetime]) -> Tuple[datetime, datetime]:
    """UTC midnight-to-midnight window containing `day`, half-open."""
    start = _midnight(day)
    return start, start + timedelta(days=1)


def week_bounds(day: Union[date, datetime], iso_week: bool = True) -> Tuple[datetime, datetime]:
    """
    Seven-day window for a weekly schedule.

    With `iso_week` the window starts on the Monday of the ISO week containing
    `day`; otherwise it is a rolling window starting at `day`'s UTC midnight.
    """
    start = _midnight(day)
    if iso_week:
        start = start - timedelta(days=start.weekday())
    return start, start + timedelta(days=7)


def days_touched(start: datetime, end: datetime):
    """UTC dates whose midnight-to-midnight window intersects [start, end)."""
    current = ensure_utc(start).date()
    last = (ensure_utc(end) - timedelta(microseconds=1)).date()
    days = []
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days
