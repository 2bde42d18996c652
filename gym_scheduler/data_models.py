# data_models.py
import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from gym_scheduler.clock import from_storage


class PenaltyReason(str, enum.Enum):
    NO_SHOW = "no_show"
    MISSING_CHECKOUT_AUTO_CLOSED = "missing_checkout_auto_closed"
    OVERSTAYED_SESSION = "overstayed_session"


@dataclass(frozen=True)
class Reservation:
    """A booked slot on the gym floor, [start_time, end_time)."""
    id: int
    owner_id: int
    start_time: datetime
    duration_hours: int
    attended: bool = False
    penalty_processed: bool = False

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(hours=self.duration_hours)

    @classmethod
    def from_record(cls, record) -> "Reservation":
        return cls(
            id=record["id"],
            owner_id=record["owner_id"],
            start_time=from_storage(record["start_time"]),
            duration_hours=record["duration_hours"],
            attended=bool(record["attended"]),
            penalty_processed=bool(record["penalty_processed"]),
        )


@dataclass(frozen=True)
class AttendanceSession:
    id: int
    owner_id: int
    check_in_time: datetime
    check_out_time: Optional[datetime] = None
    reservation_id: Optional[int] = None
    auto_closed: bool = False
    penalty_processed: bool = False

    @property
    def is_open(self) -> bool:
        return self.check_out_time is None

    @property
    def duration(self) -> Optional[timedelta]:
        if self.check_out_time is None:
            return None
        return self.check_out_time - self.check_in_time

    @classmethod
    def from_record(cls, record) -> "AttendanceSession":
        return cls(
            id=record["id"],
            owner_id=record["owner_id"],
            check_in_time=from_storage(record["check_in_time"]),
            check_out_time=from_storage(record["check_out_time"]),
            reservation_id=record["reservation_id"],
            auto_closed=bool(record["auto_closed"]),
            penalty_processed=bool(record["penalty_processed"]),
        )


@dataclass(frozen=True)
class AttendanceStatus:
    checked_in: bool
    session: Optional[AttendanceSession] = None


@dataclass(frozen=True)
class PenaltyRecord:
    id: int
    owner_id: int
    reason: PenaltyReason
    points: int
    issued_at: datetime
    reservation_id: Optional[int] = None
    session_id: Optional[int] = None

    @classmethod
    def from_record(cls, record) -> "PenaltyRecord":
        return cls(
            id=record["id"],
            owner_id=record["owner_id"],
            reason=PenaltyReason(record["reason"]),
            points=record["points"],
            issued_at=from_storage(record["issued_at"]),
            reservation_id=record["reservation_id"],
            session_id=record["session_id"],
        )


@dataclass(frozen=True)
class SuspensionState:
    owner_id: int
    active_until: Optional[datetime] = None
    reason: Optional[str] = None
    source: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return self.active_until is not None and now < self.active_until

    @classmethod
    def from_record(cls, record) -> "SuspensionState":
        return cls(
            owner_id=record["owner_id"],
            active_until=from_storage(record["active_until"]),
            reason=record["reason"],
            source=record["source"],
        )


@dataclass(frozen=True)
class SuspensionDecision:
    """Outcome of evaluating an owner's trailing demerit points."""
    owner_id: int
    total_points: int
    suspension_days: int = 0
    active_until: Optional[datetime] = None
    reason: Optional[str] = None
    # set once recorded; an active manual suspension blocks the write
    applied: bool = False

    @property
    def suspends(self) -> bool:
        return self.suspension_days > 0


@dataclass(frozen=True)
class WeekSchedule:
    start: datetime
    end: datetime
    past: List[Reservation] = field(default_factory=list)
    upcoming: List[Reservation] = field(default_factory=list)


@dataclass(frozen=True)
class PenaltySummary:
    owner_id: int
    total_points: int
    points_by_reason: Dict[PenaltyReason, int]
    records: List[PenaltyRecord]


@dataclass(frozen=True)
class PenaltyStatistics:
    total_records: int
    total_points: int
    # reason -> (count, points)
    by_reason: Dict[PenaltyReason, Tuple[int, int]]
    # owner -> (count, points)
    by_owner: Dict[int, Tuple[int, int]]


@dataclass(frozen=True)
class SweepReport:
    reservations_scanned: int = 0
    sessions_scanned: int = 0
    auto_closed: int = 0
    penalties_issued: int = 0
    penalties: List[PenaltyRecord] = field(default_factory=list)
    # (record kind, record id, error message)
    failures: List[Tuple[str, int, str]] = field(default_factory=list)


@dataclass(frozen=True)
class QRCode:
    """A check-in point code posted on site."""
    id: int
    code: str
    name: str
    active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record) -> "QRCode":
        return cls(
            id=record["id"],
            code=record["code"],
            name=record["name"],
            active=bool(record["active"]),
            created_at=from_storage(record["created_at"]),
            updated_at=from_storage(record["updated_at"]),
        )
