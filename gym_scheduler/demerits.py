# demerits.py
import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import List, Optional

import sqlalchemy
from databases import Database

from gym_scheduler.clock import Clock, SystemClock, ensure_utc, from_storage, to_storage
from gym_scheduler.config import SchedulingPolicy
from gym_scheduler.data_models import (
    AttendanceSession,
    PenaltyReason,
    PenaltyRecord,
    PenaltyStatistics,
    PenaltySummary,
    Reservation,
    SweepReport,
)
from gym_scheduler.errors import storage_guard
from gym_scheduler.models import attendance_sessions, penalty_records, reservations

logger = logging.getLogger(__name__)


class DemeritEngine:
    """
    Turns unresolved attendance facts into penalty records, exactly once each.

    A sweep claims every record before scoring it: a conditional update flips
    `penalty_processed` and stamps the sweep's claim token, and only the sweep
    whose token is read back issues the penalty. Concurrent sweeps therefore
    split the work instead of double counting it.
    """

    def __init__(
        self,
        database: Database,
        policy: Optional[SchedulingPolicy] = None,
        clock: Optional[Clock] = None,
    ):
        self.database = database
        self.policy = policy or SchedulingPolicy()
        self.clock = clock or SystemClock()

    async def _issue(
        self,
        owner_id: int,
        reason: PenaltyReason,
        points: int,
        now: datetime,
        reservation_id: Optional[int] = None,
        session_id: Optional[int] = None,
    ) -> PenaltyRecord:
        penalty_id = await self.database.execute(
            penalty_records.insert().values(
                owner_id=owner_id,
                reason=reason.value,
                points=points,
                issued_at=to_storage(now),
                reservation_id=reservation_id,
                session_id=session_id,
            )
        )
        return PenaltyRecord(
            id=penalty_id,
            owner_id=owner_id,
            reason=reason,
            points=points,
            issued_at=now,
            reservation_id=reservation_id,
            session_id=session_id,
        )

    async def _claim(self, table, record_id: int, token: str):
        """Marks the row processed if nobody has yet; returns the fresh row when this sweep won it."""
        await self.database.execute(
            table.update().where(
                table.c.id == record_id,
                table.c.penalty_processed == False,  # noqa: E712
            ).values(penalty_processed=True, claim_token=token)
        )
        record = await self.database.fetch_one(table.select().where(table.c.id == record_id))
        if record is None or record["claim_token"] != token:
            return None
        return record

    async def _settle_reservation(self, reservation_id: int, token: str, now: datetime):
        async with self.database.transaction():
            record = await self._claim(reservations, reservation_id, token)
            if record is None:
                return False, None
            reservation = Reservation.from_record(record)
            if reservation.attended:
                return True, None
            penalty = await self._issue(
                reservation.owner_id,
                PenaltyReason.NO_SHOW,
                self.policy.no_show_points,
                now,
                reservation_id=reservation.id,
            )
            return True, penalty

    async def _settle_session(self, session_id: int, token: str, now: datetime):
        async with self.database.transaction():
            record = await self._claim(attendance_sessions, session_id, token)
            if record is None:
                return False, False, None
            session = AttendanceSession.from_record(record)

            if session.is_open:
                await self.database.execute(
                    attendance_sessions.update().where(
                        attendance_sessions.c.id == session.id
                    ).values(check_out_time=to_storage(now), auto_closed=True)
                )
                penalty = await self._issue(
                    session.owner_id,
                    PenaltyReason.MISSING_CHECKOUT_AUTO_CLOSED,
                    self.policy.missing_checkout_points,
                    now,
                    session_id=session.id,
                )
                return True, True, penalty

            if session.duration > self.policy.max_session:
                penalty = await self._issue(
                    session.owner_id,
                    PenaltyReason.OVERSTAYED_SESSION,
                    self.policy.overstay_points,
                    now,
                    session_id=session.id,
                )
                return True, False, penalty
            return True, False, None

    @storage_guard
    async def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = ensure_utc(now) if now is not None else self.clock.now()
        token = str(uuid.uuid4())
        penalties: List[PenaltyRecord] = []
        failures = []
        reservations_scanned = sessions_scanned = auto_closed = 0

        due = await self.database.fetch_all(
            sqlalchemy.select(reservations.c.id).where(
                reservations.c.penalty_processed == False,  # noqa: E712
                reservations.c.start_time < to_storage(now - self.policy.sweep_grace),
            ).order_by(reservations.c.start_time)
        )
        for row in due:
            try:
                claimed, penalty = await self._settle_reservation(row["id"], token, now)
            except Exception as exc:
                logger.exception("Demerit sweep failed on reservation %s", row["id"])
                failures.append(("reservation", row["id"], str(exc)))
                continue
            if claimed:
                reservations_scanned += 1
            if penalty is not None:
                penalties.append(penalty)

        # open sessions still inside the allowed length are left for a later sweep
        session_rows = await self.database.fetch_all(
            sqlalchemy.select(
                attendance_sessions.c.id,
                attendance_sessions.c.check_in_time,
                attendance_sessions.c.check_out_time,
            ).where(
                attendance_sessions.c.penalty_processed == False,  # noqa: E712
                attendance_sessions.c.check_in_time < to_storage(now),
            ).order_by(attendance_sessions.c.check_in_time)
        )
        for row in session_rows:
            check_in_time = from_storage(row["check_in_time"])
            if row["check_out_time"] is None and now - check_in_time <= self.policy.max_session:
                continue
            try:
                claimed, closed, penalty = await self._settle_session(row["id"], token, now)
            except Exception as exc:
                logger.exception("Demerit sweep failed on attendance session %s", row["id"])
                failures.append(("session", row["id"], str(exc)))
                continue
            if claimed:
                sessions_scanned += 1
            if closed:
                auto_closed += 1
            if penalty is not None:
                penalties.append(penalty)

        report = SweepReport(
            reservations_scanned=reservations_scanned,
            sessions_scanned=sessions_scanned,
            auto_closed=auto_closed,
            penalties_issued=len(penalties),
            penalties=penalties,
            failures=failures,
        )
        logger.info(
            "Demerit sweep at %s: %s reservations, %s sessions, %s auto-closed, %s penalties, %s failures",
            now,
            report.reservations_scanned,
            report.sessions_scanned,
            report.auto_closed,
            report.penalties_issued,
            len(report.failures),
        )
        return report

    # Ledger projections

    @storage_guard
    async def penalties(self, owner_id: Optional[int] = None) -> List[PenaltyRecord]:
        query = penalty_records.select().order_by(penalty_records.c.issued_at.desc(), penalty_records.c.id.desc())
        if owner_id is not None:
            query = query.where(penalty_records.c.owner_id == owner_id)
        records = await self.database.fetch_all(query)
        return [PenaltyRecord.from_record(record) for record in records]

    async def summary(self, owner_id: int) -> PenaltySummary:
        records = await self.penalties(owner_id)
        by_reason = defaultdict(int)
        for penalty in records:
            by_reason[penalty.reason] += penalty.points
        return PenaltySummary(
            owner_id=owner_id,
            total_points=sum(penalty.points for penalty in records),
            points_by_reason=dict(by_reason),
            records=records,
        )

    async def statistics(self) -> PenaltyStatistics:
        records = await self.penalties()
        by_reason = defaultdict(lambda: (0, 0))
        by_owner = defaultdict(lambda: (0, 0))
        for penalty in records:
            count, points = by_reason[penalty.reason]
            by_reason[penalty.reason] = (count + 1, points + penalty.points)
            count, points = by_owner[penalty.owner_id]
            by_owner[penalty.owner_id] = (count + 1, points + penalty.points)
        return PenaltyStatistics(
            total_records=len(records),
            total_points=sum(penalty.points for penalty in records),
            by_reason=dict(by_reason),
            by_owner=dict(by_owner),
        )
