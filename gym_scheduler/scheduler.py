# scheduler.py
import logging
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Union

from databases import Database

from gym_scheduler.availability import SlotAvailabilityIndex
from gym_scheduler.clock import Clock, SystemClock, day_bounds, days_touched, ensure_utc, to_storage, week_bounds
from gym_scheduler.config import SchedulingPolicy
from gym_scheduler.data_models import Reservation, WeekSchedule
from gym_scheduler.errors import Rejection, RejectionReason, ValidationError, storage_guard
from gym_scheduler.locks import KeyedLocks
from gym_scheduler.models import reservations

logger = logging.getLogger(__name__)

BookingResult = Union[Reservation, Rejection]


def validate_duration(duration_hours) -> int:
    # bool is an int subclass; True is not a duration
    if isinstance(duration_hours, bool) or not isinstance(duration_hours, int):
        raise ValidationError(f"Duration must be a whole number of hours, got {duration_hours!r}")
    if duration_hours < 1:
        raise ValidationError(f"Duration must be at least 1 hour, got {duration_hours}")
    return duration_hours


class BookingScheduler:
    """
    Admits, modifies and cancels reservations against the shared floor capacity.

    Every admission decision runs under the locks of the UTC days its interval
    touches, so two requests that could overlap are always decided one after
    the other and cannot jointly exceed `max_concurrent_per_slot`.
    """

    def __init__(
        self,
        database: Database,
        policy: Optional[SchedulingPolicy] = None,
        clock: Optional[Clock] = None,
        index: Optional[SlotAvailabilityIndex] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.database = database
        self.policy = policy or SchedulingPolicy()
        self.clock = clock or SystemClock()
        self.index = index or SlotAvailabilityIndex(database)
        self.locks = locks or KeyedLocks()

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else self.clock.now()

    async def _check_admission(
        self,
        owner_id: int,
        start: datetime,
        duration_hours: int,
        exclude_reservation: Optional[int] = None,
    ) -> Optional[Rejection]:
        """Runs the admission rules in order and returns the first one that fails."""
        policy = self.policy
        end = start + timedelta(hours=duration_hours)

        if duration_hours > policy.max_duration_hours:
            return Rejection(
                RejectionReason.DURATION_TOO_LONG,
                f"Maximum booking duration is {policy.max_duration_hours} hours.",
            )

        if await self.index.owner_overlaps(owner_id, start, end, exclude_reservation=exclude_reservation):
            return Rejection(RejectionReason.SELF_OVERLAP, "You already have a booking during this time.")

        day_start, day_end = day_bounds(start)
        daily = await self.index.owner_daily_count(owner_id, day_start, day_end, exclude_reservation=exclude_reservation)
        if daily >= policy.max_daily_bookings:
            return Rejection(
                RejectionReason.DAILY_LIMIT_REACHED,
                f"You can only book up to {policy.max_daily_bookings} slots per day.",
            )

        occupied = await self.index.overlap_count(start, end, exclude_reservation=exclude_reservation)
        if occupied >= policy.max_concurrent_per_slot:
            return Rejection(RejectionReason.CAPACITY_EXCEEDED, "Gym is fully booked for the selected time.")

        return None

    def _locked_out(self, reservation: Reservation, now: datetime) -> Optional[Rejection]:
        if reservation.start_time - now <= self.policy.lockout:
            minutes = int(self.policy.lockout.total_seconds() // 60)
            return Rejection(
                RejectionReason.LOCKED_WINDOW,
                f"Bookings cannot be changed within {minutes} minutes of their start.",
            )
        return None

    @storage_guard
    async def admit(self, owner_id: int, start: datetime, duration_hours: int) -> BookingResult:
        start = ensure_utc(start)
        validate_duration(duration_hours)
        end = start + timedelta(hours=duration_hours)

        async with self.locks.hold(*days_touched(start, end)):
            async with self.database.transaction():
                rejection = await self._check_admission(owner_id, start, duration_hours)
                if rejection is not None:
                    logger.debug("Booking for owner %s at %s rejected: %s", owner_id, start, rejection.reason.value)
                    return rejection

                query = reservations.insert().values(
                    owner_id=owner_id,
                    start_time=to_storage(start),
                    end_time=to_storage(end),
                    duration_hours=duration_hours,
                    attended=False,
                    penalty_processed=False,
                    created_at=to_storage(self.clock.now()),
                )
                reservation_id = await self.database.execute(query)

        logger.info("Reservation %s admitted for owner %s at %s (%sh)", reservation_id, owner_id, start, duration_hours)
        return Reservation(id=reservation_id, owner_id=owner_id, start_time=start, duration_hours=duration_hours)

    @storage_guard
    async def modify(
        self,
        reservation_id: int,
        owner_id: int,
        new_start: Optional[datetime] = None,
        new_duration: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> BookingResult:
        """Moves or resizes an owner's reservation, re-running the admission rules on the new interval."""
        now = self._now(now)
        current = await self.get(reservation_id)
        if current is None:
            return Rejection(RejectionReason.NOT_FOUND, "Booking not found.")
        if current.owner_id != owner_id:
            return Rejection(RejectionReason.NOT_OWNER, "You cannot modify this booking.")
        rejection = self._locked_out(current, now)
        if rejection is not None:
            return rejection

        start = ensure_utc(new_start) if new_start is not None else current.start_time
        duration = validate_duration(new_duration) if new_duration is not None else current.duration_hours
        end = start + timedelta(hours=duration)

        days = days_touched(start, end) + days_touched(current.start_time, current.end_time)
        async with self.locks.hold(*days):
            async with self.database.transaction():
                # re-read under the lock: a concurrent cancel or move may have won
                current = await self.get(reservation_id)
                if current is None or current.owner_id != owner_id:
                    return Rejection(RejectionReason.NOT_FOUND, "Booking not found.")
                rejection = self._locked_out(current, now)
                if rejection is None:
                    rejection = await self._check_admission(owner_id, start, duration, exclude_reservation=reservation_id)
                if rejection is not None:
                    logger.debug("Update of reservation %s rejected: %s", reservation_id, rejection.reason.value)
                    return rejection

                query = reservations.update().where(reservations.c.id == reservation_id).values(
                    start_time=to_storage(start),
                    end_time=to_storage(end),
                    duration_hours=duration,
                )
                await self.database.execute(query)

        logger.info("Reservation %s moved to %s (%sh)", reservation_id, start, duration)
        return Reservation(
            id=current.id,
            owner_id=current.owner_id,
            start_time=start,
            duration_hours=duration,
            attended=current.attended,
            penalty_processed=current.penalty_processed,
        )

    @storage_guard
    async def cancel(self, reservation_id: int, owner_id: int, now: Optional[datetime] = None) -> BookingResult:
        """Deletes an owner's reservation and returns its last snapshot."""
        now = self._now(now)
        current = await self.get(reservation_id)
        if current is None:
            return Rejection(RejectionReason.NOT_FOUND, "Booking not found.")
        if current.owner_id != owner_id:
            return Rejection(RejectionReason.NOT_OWNER, "You cannot cancel this booking.")

        async with self.locks.hold(*days_touched(current.start_time, current.end_time)):
            async with self.database.transaction():
                current = await self.get(reservation_id)
                if current is None:
                    return Rejection(RejectionReason.NOT_FOUND, "Booking not found.")
                rejection = self._locked_out(current, now)
                if rejection is not None:
                    return rejection
                await self.database.execute(reservations.delete().where(reservations.c.id == reservation_id))

        logger.info("Reservation %s cancelled by owner %s", reservation_id, owner_id)
        return current

    # Read-only projections

    @storage_guard
    async def get(self, reservation_id: int) -> Optional[Reservation]:
        record = await self.database.fetch_one(reservations.select().where(reservations.c.id == reservation_id))
        return Reservation.from_record(record) if record else None

    async def _fetch(self, query) -> List[Reservation]:
        records = await self.database.fetch_all(query)
        return [Reservation.from_record(record) for record in records]

    @storage_guard
    async def all(self) -> List[Reservation]:
        return await self._fetch(reservations.select().order_by(reservations.c.start_time))

    @storage_guard
    async def for_range(self, range_start: datetime, range_end: datetime) -> List[Reservation]:
        """Reservations starting inside [range_start, range_end), oldest first."""
        query = reservations.select().where(
            reservations.c.start_time >= to_storage(range_start),
            reservations.c.start_time < to_storage(range_end),
        ).order_by(reservations.c.start_time)
        return await self._fetch(query)

    async def for_day(self, day: Union[date, datetime]) -> List[Reservation]:
        return await self.for_range(*day_bounds(day))

    async def for_week(
        self,
        day: Union[date, datetime],
        iso_week: bool = True,
        now: Optional[datetime] = None,
    ) -> WeekSchedule:
        now = self._now(now)
        start, end = week_bounds(day, iso_week=iso_week)
        weekly = await self.for_range(start, end)
        return WeekSchedule(
            start=start,
            end=end,
            past=[r for r in weekly if r.start_time < now],
            upcoming=[r for r in weekly if r.start_time >= now],
        )

    async def week_slot_counts(
        self,
        day: Union[date, datetime],
        iso_week: bool = True,
        slot_minutes: int = 60,
    ) -> Dict[datetime, int]:
        start, end = week_bounds(day, iso_week=iso_week)
        return await self.index.slot_counts(start, end, slot_minutes=slot_minutes)

    @storage_guard
    async def history(self, owner_id: int) -> List[Reservation]:
        query = reservations.select().where(reservations.c.owner_id == owner_id).order_by(
            reservations.c.start_time.desc()
        )
        return await self._fetch(query)

    @storage_guard
    async def past(self, now: Optional[datetime] = None) -> List[Reservation]:
        query = reservations.select().where(
            reservations.c.start_time < to_storage(self._now(now))
        ).order_by(reservations.c.start_time.desc())
        return await self._fetch(query)

    @storage_guard
    async def upcoming(self, now: Optional[datetime] = None) -> List[Reservation]:
        query = reservations.select().where(
            reservations.c.start_time >= to_storage(self._now(now))
        ).order_by(reservations.c.start_time)
        return await self._fetch(query)
