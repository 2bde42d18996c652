# suspension.py
import dataclasses
import logging
from datetime import datetime, timedelta
from typing import List, Optional

import sqlalchemy
from databases import Database

from gym_scheduler.clock import Clock, SystemClock, ensure_utc, to_storage
from gym_scheduler.config import SchedulingPolicy
from gym_scheduler.data_models import SuspensionDecision, SuspensionState
from gym_scheduler.errors import ValidationError, storage_guard
from gym_scheduler.models import penalty_records, suspensions

logger = logging.getLogger(__name__)

AUTO = "auto"
MANUAL = "manual"


class SuspensionPolicy:
    """Maps trailing demerit points to suspension tiers and keeps each owner's suspension state."""

    def __init__(
        self,
        database: Database,
        policy: Optional[SchedulingPolicy] = None,
        clock: Optional[Clock] = None,
    ):
        self.database = database
        self.policy = policy or SchedulingPolicy()
        self.clock = clock or SystemClock()

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else self.clock.now()

    @storage_guard
    async def trailing_points(self, owner_id: int, now: Optional[datetime] = None) -> int:
        now = self._now(now)
        query = sqlalchemy.select(sqlalchemy.func.coalesce(sqlalchemy.func.sum(penalty_records.c.points), 0)).where(
            penalty_records.c.owner_id == owner_id,
            penalty_records.c.issued_at >= to_storage(now - self.policy.penalty_window),
            penalty_records.c.issued_at <= to_storage(now),
        )
        return int(await self.database.fetch_val(query) or 0)

    async def evaluate(self, owner_id: int, now: Optional[datetime] = None) -> SuspensionDecision:
        now = self._now(now)
        total = await self.trailing_points(owner_id, now)
        for threshold, days in self.policy.suspension_tiers:
            if total > threshold:
                return SuspensionDecision(
                    owner_id=owner_id,
                    total_points=total,
                    suspension_days=days,
                    active_until=now + timedelta(days=days),
                    reason=f"Automatic suspension due to demerit points ({total} points)",
                )
        return SuspensionDecision(owner_id=owner_id, total_points=total)

    async def _write(self, state: SuspensionState, now: datetime):
        values = dict(
            active_until=to_storage(state.active_until) if state.active_until else None,
            reason=state.reason,
            source=state.source,
            updated_at=to_storage(now),
        )
        async with self.database.transaction():
            existing = await self.database.fetch_one(
                suspensions.select().where(suspensions.c.owner_id == state.owner_id)
            )
            if existing is None:
                await self.database.execute(suspensions.insert().values(owner_id=state.owner_id, **values))
            else:
                await self.database.execute(
                    suspensions.update().where(suspensions.c.owner_id == state.owner_id).values(**values)
                )

    @storage_guard
    async def apply_auto(self, owner_id: int, now: Optional[datetime] = None) -> SuspensionDecision:
        """
        Evaluates the owner and records the suspension, unless a manual one is in force.

        The returned decision has `applied` set only when the suspension was written.
        """
        now = self._now(now)
        decision = await self.evaluate(owner_id, now)
        if not decision.suspends:
            return decision

        current = await self.state(owner_id)
        if current.source == MANUAL and current.is_active(now):
            logger.info("Owner %s keeps manual suspension until %s", owner_id, current.active_until)
            return decision

        await self._write(
            SuspensionState(owner_id, decision.active_until, decision.reason, AUTO),
            now,
        )
        logger.info("Owner %s auto-suspended until %s (%s points)", owner_id, decision.active_until, decision.total_points)
        return dataclasses.replace(decision, applied=True)

    @storage_guard
    async def apply_suspension(
        self,
        owner_id: int,
        days: int,
        reason: str,
        now: Optional[datetime] = None,
    ) -> SuspensionState:
        if isinstance(days, bool) or not isinstance(days, int) or days < 1:
            raise ValidationError(f"Suspension length must be a positive number of days, got {days!r}")
        if not reason:
            raise ValidationError("A suspension reason is required")
        now = self._now(now)
        state = SuspensionState(owner_id, now + timedelta(days=days), reason, MANUAL)
        await self._write(state, now)
        logger.info("Owner %s suspended until %s: %s", owner_id, state.active_until, reason)
        return state

    @storage_guard
    async def remove_suspension(self, owner_id: int, now: Optional[datetime] = None) -> SuspensionState:
        state = SuspensionState(owner_id)
        await self._write(state, self._now(now))
        logger.info("Suspension removed for owner %s", owner_id)
        return state

    @storage_guard
    async def state(self, owner_id: int) -> SuspensionState:
        record = await self.database.fetch_one(suspensions.select().where(suspensions.c.owner_id == owner_id))
        return SuspensionState.from_record(record) if record else SuspensionState(owner_id)

    async def is_suspended(self, owner_id: int, now: Optional[datetime] = None) -> bool:
        state = await self.state(owner_id)
        return state.is_active(self._now(now))

    async def remaining(self, owner_id: int, now: Optional[datetime] = None) -> Optional[timedelta]:
        now = self._now(now)
        state = await self.state(owner_id)
        if not state.is_active(now):
            return None
        return state.active_until - now

    @storage_guard
    async def all_states(self) -> List[SuspensionState]:
        records = await self.database.fetch_all(suspensions.select().order_by(suspensions.c.owner_id))
        return [SuspensionState.from_record(record) for record in records]
