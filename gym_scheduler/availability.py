# availability.py
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import sqlalchemy
from databases import Database

from gym_scheduler.clock import ensure_utc, to_storage
from gym_scheduler.data_models import Reservation
from gym_scheduler.errors import ValidationError, storage_guard
from gym_scheduler.models import reservations


def _overlapping(range_start: datetime, range_end: datetime):
    # half-open intervals: touching end-to-start is not an overlap
    return sqlalchemy.and_(
        reservations.c.start_time < to_storage(range_end),
        reservations.c.end_time > to_storage(range_start),
    )


class SlotAvailabilityIndex:
    """Answers how much of the floor is already reserved over a time range."""

    def __init__(self, database: Database):
        self.database = database

    @storage_guard
    async def overlap_count(
        self,
        range_start: datetime,
        range_end: datetime,
        exclude_owner: Optional[int] = None,
        exclude_reservation: Optional[int] = None,
    ) -> int:
        """Counts reservations whose interval intersects [range_start, range_end)."""
        conditions = [_overlapping(range_start, range_end)]
        if exclude_owner is not None:
            conditions.append(reservations.c.owner_id != exclude_owner)
        if exclude_reservation is not None:
            conditions.append(reservations.c.id != exclude_reservation)
        query = sqlalchemy.select(sqlalchemy.func.count()).select_from(reservations).where(*conditions)
        return await self.database.fetch_val(query) or 0

    @storage_guard
    async def owner_overlaps(
        self,
        owner_id: int,
        range_start: datetime,
        range_end: datetime,
        exclude_reservation: Optional[int] = None,
    ) -> List[Reservation]:
        query = reservations.select().where(
            reservations.c.owner_id == owner_id,
            _overlapping(range_start, range_end),
        )
        if exclude_reservation is not None:
            query = query.where(reservations.c.id != exclude_reservation)
        records = await self.database.fetch_all(query.order_by(reservations.c.start_time))
        return [Reservation.from_record(record) for record in records]

    @storage_guard
    async def owner_daily_count(
        self,
        owner_id: int,
        day_start: datetime,
        day_end: datetime,
        exclude_reservation: Optional[int] = None,
    ) -> int:
        """Counts the owner's reservations starting inside [day_start, day_end)."""
        query = sqlalchemy.select(sqlalchemy.func.count()).select_from(reservations).where(
            reservations.c.owner_id == owner_id,
            reservations.c.start_time >= to_storage(day_start),
            reservations.c.start_time < to_storage(day_end),
        )
        if exclude_reservation is not None:
            query = query.where(reservations.c.id != exclude_reservation)
        return await self.database.fetch_val(query) or 0

    @storage_guard
    async def slot_counts(
        self,
        range_start: datetime,
        range_end: datetime,
        slot_minutes: int = 60,
    ) -> Dict[datetime, int]:
        """Number of reservations overlapping each slot of the range, keyed by slot start."""
        if slot_minutes <= 0:
            raise ValidationError("slot_minutes must be positive")
        records = await self.database.fetch_all(
            reservations.select().where(_overlapping(range_start, range_end))
        )
        booked = [Reservation.from_record(record) for record in records]

        step = timedelta(minutes=slot_minutes)
        counts = {}
        slot = ensure_utc(range_start)
        range_end = ensure_utc(range_end)
        while slot < range_end:
            slot_end = min(slot + step, range_end)
            counts[slot] = sum(1 for r in booked if r.start_time < slot_end and r.end_time > slot)
            slot = slot_end
        return counts
