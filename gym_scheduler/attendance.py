# attendance.py
import logging
import sqlite3
from datetime import datetime
from typing import List, Optional, Union

import sqlalchemy
from databases import Database
from sqlalchemy.exc import IntegrityError

from gym_scheduler.clock import Clock, SystemClock, ensure_utc, to_storage
from gym_scheduler.config import SchedulingPolicy
from gym_scheduler.data_models import AttendanceSession, AttendanceStatus, Reservation
from gym_scheduler.errors import Rejection, RejectionReason, storage_guard
from gym_scheduler.locks import KeyedLocks
from gym_scheduler.models import attendance_sessions, reservations

logger = logging.getLogger(__name__)

AttendanceResult = Union[AttendanceSession, Rejection]


class AttendanceTracker:
    """Opens and closes attendance sessions against the owner's reservations."""

    def __init__(
        self,
        database: Database,
        policy: Optional[SchedulingPolicy] = None,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.database = database
        self.policy = policy or SchedulingPolicy()
        self.clock = clock or SystemClock()
        self.locks = locks or KeyedLocks()

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else self.clock.now()

    async def _open_session(self, owner_id: int) -> Optional[AttendanceSession]:
        query = attendance_sessions.select().where(
            attendance_sessions.c.owner_id == owner_id,
            attendance_sessions.c.check_out_time.is_(None),
        )
        record = await self.database.fetch_one(query)
        return AttendanceSession.from_record(record) if record else None

    async def _bookable_reservation(self, owner_id: int, now: datetime) -> Optional[Reservation]:
        # check-in is open from `check_in_before` ahead of the start until `check_in_after` past it
        earliest_start = now - self.policy.check_in_after
        latest_start = now + self.policy.check_in_before
        query = reservations.select().where(
            reservations.c.owner_id == owner_id,
            reservations.c.start_time >= to_storage(earliest_start),
            reservations.c.start_time <= to_storage(latest_start),
        ).order_by(reservations.c.attended, reservations.c.start_time)
        record = await self.database.fetch_one(query)
        return Reservation.from_record(record) if record else None

    @storage_guard
    async def check_in(self, owner_id: int, now: Optional[datetime] = None) -> AttendanceResult:
        now = self._now(now)
        async with self.locks.hold(owner_id):
            try:
                async with self.database.transaction():
                    reservation = await self._bookable_reservation(owner_id, now)
                    if reservation is None:
                        minutes = int(self.policy.check_in_before.total_seconds() // 60)
                        return Rejection(
                            RejectionReason.NO_ACTIVE_BOOKING,
                            f"You can only check in up to {minutes} minutes before your booking.",
                        )
                    if await self._open_session(owner_id) is not None:
                        return Rejection(RejectionReason.ALREADY_CHECKED_IN, "You are already checked in.")

                    session_id = await self.database.execute(
                        attendance_sessions.insert().values(
                            owner_id=owner_id,
                            reservation_id=reservation.id,
                            check_in_time=to_storage(now),
                            check_out_time=None,
                            auto_closed=False,
                            penalty_processed=False,
                        )
                    )
                    await self.database.execute(
                        reservations.update().where(reservations.c.id == reservation.id).values(attended=True)
                    )
            except (IntegrityError, sqlite3.IntegrityError):
                # another process opened a session between our read and write
                return Rejection(RejectionReason.ALREADY_CHECKED_IN, "You are already checked in.")

        logger.info("Owner %s checked in at %s for reservation %s", owner_id, now, reservation.id)
        return AttendanceSession(
            id=session_id,
            owner_id=owner_id,
            check_in_time=now,
            reservation_id=reservation.id,
        )

    @storage_guard
    async def check_out(self, owner_id: int, now: Optional[datetime] = None) -> AttendanceResult:
        now = self._now(now)
        async with self.locks.hold(owner_id):
            async with self.database.transaction():
                session = await self._open_session(owner_id)
                if session is None:
                    return Rejection(RejectionReason.NOT_CHECKED_IN, "You are not checked in.")
                await self.database.execute(
                    attendance_sessions.update().where(
                        attendance_sessions.c.id == session.id,
                        attendance_sessions.c.check_out_time.is_(None),
                    ).values(check_out_time=to_storage(now))
                )
                # a sweep may have auto-closed the session first; report what is stored
                record = await self.database.fetch_one(
                    attendance_sessions.select().where(attendance_sessions.c.id == session.id)
                )

        closed = AttendanceSession.from_record(record)
        if closed.auto_closed:
            logger.info("Owner %s checked out after session %s was auto-closed at %s", owner_id, closed.id, closed.check_out_time)
        else:
            logger.info("Owner %s checked out at %s", owner_id, now)
        return closed

    @storage_guard
    async def status(self, owner_id: int) -> AttendanceStatus:
        session = await self._open_session(owner_id)
        if session is None:
            return AttendanceStatus(checked_in=False)
        return AttendanceStatus(checked_in=True, session=session)

    @storage_guard
    async def sessions(self, owner_id: Optional[int] = None) -> List[AttendanceSession]:
        query = attendance_sessions.select().order_by(attendance_sessions.c.check_in_time.desc())
        if owner_id is not None:
            query = query.where(attendance_sessions.c.owner_id == owner_id)
        records = await self.database.fetch_all(query)
        return [AttendanceSession.from_record(record) for record in records]

    @storage_guard
    async def current_population(self) -> int:
        """Number of people currently on the floor (open sessions)."""
        query = sqlalchemy.select(sqlalchemy.func.count()).select_from(attendance_sessions).where(
            attendance_sessions.c.check_out_time.is_(None)
        )
        return await self.database.fetch_val(query) or 0
