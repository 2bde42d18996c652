# errors.py
import enum
import functools
import logging
import sqlite3
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class GymSchedulerError(Exception):
    """Base class for errors raised by the scheduling core."""


class ValidationError(GymSchedulerError):
    """Malformed input: bad duration, naive datetime, unparsable date."""


class InfrastructureError(GymSchedulerError):
    """Storage failed; the whole operation may be retried."""


class RejectionReason(str, enum.Enum):
    DURATION_TOO_LONG = "duration_too_long"
    SELF_OVERLAP = "self_overlap"
    DAILY_LIMIT_REACHED = "daily_limit_reached"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    LOCKED_WINDOW = "locked_window"
    NOT_FOUND = "not_found"
    NOT_OWNER = "not_owner"
    NO_ACTIVE_BOOKING = "no_active_booking"
    ALREADY_CHECKED_IN = "already_checked_in"
    NOT_CHECKED_IN = "not_checked_in"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class Rejection:
    """A business rule refused the operation. Returned, never raised."""
    reason: RejectionReason
    message: str


_STORAGE_ERRORS = (SQLAlchemyError, sqlite3.Error, OSError)


def storage_guard(func):
    """Wraps driver and SQLAlchemy failures of an async operation in InfrastructureError."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except _STORAGE_ERRORS as exc:
            logger.exception("Storage failure in %s", func.__qualname__)
            raise InfrastructureError(f"Storage unavailable: {exc}") from exc
    return wrapper
