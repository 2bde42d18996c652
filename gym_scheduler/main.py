# main.py
import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

import fastapi
from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from gym_scheduler import config
from gym_scheduler.attendance import AttendanceTracker
from gym_scheduler.auth import Principal, get_current_principal, require_admin
from gym_scheduler.clock import Clock, SystemClock
from gym_scheduler.config import SchedulingPolicy, load_policy
from gym_scheduler.database import create_tables, database
from gym_scheduler.demerits import DemeritEngine
from gym_scheduler.errors import InfrastructureError, Rejection, RejectionReason, ValidationError
from gym_scheduler.locks import KeyedLocks
from gym_scheduler.qr_codes import QRCodeRegistry
from gym_scheduler.scheduler import BookingScheduler
from gym_scheduler.suspension import SuspensionPolicy

logger = logging.getLogger(__name__)


@dataclass
class Services:
    scheduler: BookingScheduler
    attendance: AttendanceTracker
    demerits: DemeritEngine
    suspensions: SuspensionPolicy
    qr_codes: QRCodeRegistry


def build_services(db, policy: Optional[SchedulingPolicy] = None, clock: Optional[Clock] = None) -> Services:
    policy = policy or load_policy()
    clock = clock or SystemClock()
    return Services(
        scheduler=BookingScheduler(db, policy, clock, locks=KeyedLocks()),
        attendance=AttendanceTracker(db, policy, clock, locks=KeyedLocks()),
        demerits=DemeritEngine(db, policy, clock),
        suspensions=SuspensionPolicy(db, policy, clock),
        qr_codes=QRCodeRegistry(db, clock),
    )


services = build_services(database)


def get_services() -> Services:
    return services


#FastAPI Setup
app = fastapi.FastAPI()

REJECTION_STATUS = {
    RejectionReason.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RejectionReason.NOT_OWNER: status.HTTP_403_FORBIDDEN,
}


def unwrap(result):
    """Turns a returned business rejection into the matching HTTP error."""
    if isinstance(result, Rejection):
        raise HTTPException(
            status_code=REJECTION_STATUS.get(result.reason, status.HTTP_400_BAD_REQUEST),
            detail={"reason": result.reason.value, "message": result.message},
        )
    return result


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


@app.exception_handler(InfrastructureError)
async def infrastructure_error_handler(request: Request, exc: InfrastructureError):
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Storage unavailable, retry later."})


async def get_active_principal(
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
) -> Principal:
    """Refuses suspended principals; the flag from the identity service and our own state both count."""
    if principal.is_suspended or await svc.suspensions.is_suspended(principal.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Your account is suspended.")
    return principal


# Booking Models and Endpoints
class BookingCreate(BaseModel):
    start_time: datetime
    duration: int


class BookingUpdate(BaseModel):
    start_time: Optional[datetime] = None
    duration: Optional[int] = None


@app.post("/api/bookings", status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking: BookingCreate,
    principal: Principal = Depends(get_active_principal),
    svc: Services = Depends(get_services),
):
    return unwrap(await svc.scheduler.admit(principal.id, booking.start_time, booking.duration))


@app.get("/api/bookings")
async def get_all_bookings(principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    return await svc.scheduler.all()


@app.get("/api/bookings/date/{day}")
async def get_bookings_for_date(day: date, principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    return await svc.scheduler.for_day(day)


@app.get("/api/bookings/week")
async def get_bookings_for_week(
    day: date,
    iso_week: bool = True,
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
):
    return await svc.scheduler.for_week(day, iso_week=iso_week)


@app.get("/api/bookings/week-count")
async def get_bookings_for_week_by_timeslot(
    day: date,
    iso_week: bool = True,
    slot_minutes: int = 60,
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
):
    counts = await svc.scheduler.week_slot_counts(day, iso_week=iso_week, slot_minutes=slot_minutes)
    return [{"slot_start": slot.isoformat(), "count": count} for slot, count in counts.items()]


@app.get("/api/bookings/history")
async def get_user_booking_history(principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    return await svc.scheduler.history(principal.id)


@app.get("/api/bookings/past")
async def get_past_bookings(principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    return await svc.scheduler.past()


@app.get("/api/bookings/upcoming")
async def get_upcoming_bookings(principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    return await svc.scheduler.upcoming()


@app.get("/api/bookings/{booking_id}")
async def get_booking(booking_id: int, principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    booking = await svc.scheduler.get(booking_id)
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking


@app.patch("/api/bookings/{booking_id}")
async def update_booking(
    booking_id: int,
    update: BookingUpdate,
    principal: Principal = Depends(get_active_principal),
    svc: Services = Depends(get_services),
):
    result = await svc.scheduler.modify(
        booking_id,
        principal.id,
        new_start=update.start_time,
        new_duration=update.duration,
    )
    return unwrap(result)


@app.delete("/api/bookings/{booking_id}")
async def delete_booking(booking_id: int, principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    return unwrap(await svc.scheduler.cancel(booking_id, principal.id))


# Attendance Endpoints
@app.post("/api/checkin", status_code=status.HTTP_201_CREATED)
async def check_in(principal: Principal = Depends(get_active_principal), svc: Services = Depends(get_services)):
    return unwrap(await svc.attendance.check_in(principal.id))


@app.post("/api/checkout")
async def check_out(principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    return unwrap(await svc.attendance.check_out(principal.id))


@app.get("/api/checkin/status")
async def get_check_in_status(principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    current = await svc.attendance.status(principal.id)
    if current.checked_in:
        return {"status": "checked-in", "session": current.session}
    return {"status": "checked-out"}


@app.get("/api/checkin/population")
async def get_current_gym_population(principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    return {"population": await svc.attendance.current_population()}


@app.get("/api/checkin/all")
async def get_all_check_ins(admin: Principal = Depends(require_admin), svc: Services = Depends(get_services)):
    return await svc.attendance.sessions()


# Demerit Endpoints
@app.post("/api/demerits/sweep")
async def check_demerits(admin: Principal = Depends(require_admin), svc: Services = Depends(get_services)):
    return await svc.demerits.run_sweep()


@app.get("/api/demerits/me")
async def get_user_demerits(principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    return await svc.demerits.summary(principal.id)


@app.get("/api/demerits")
async def get_all_demerits(admin: Principal = Depends(require_admin), svc: Services = Depends(get_services)):
    return {
        "statistics": await svc.demerits.statistics(),
        "demerits": await svc.demerits.penalties(),
    }


# Suspension Endpoints
class SuspensionRequest(BaseModel):
    owner_id: int
    days: Optional[int] = None
    reason: Optional[str] = None
    auto_suspend: bool = False


async def _suspension_payload(svc: Services, owner_id: int) -> dict:
    remaining = await svc.suspensions.remaining(owner_id)
    if remaining is None:
        return {"suspended": False}
    return {
        "suspended": True,
        "details": await svc.suspensions.state(owner_id),
        "remaining_seconds": remaining.total_seconds(),
    }


@app.post("/api/suspensions")
async def suspend_user(request: SuspensionRequest, admin: Principal = Depends(require_admin), svc: Services = Depends(get_services)):
    if request.auto_suspend:
        decision = await svc.suspensions.apply_auto(request.owner_id)
        if not decision.suspends:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User does not meet auto-suspension criteria")
        if not decision.applied:
            current = await svc.suspensions.state(request.owner_id)
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "message": "A manual suspension is in force; remove it before applying an automatic one.",
                    "active_until": current.active_until.isoformat() if current.active_until else None,
                    "reason": current.reason,
                },
            )
        return decision
    if request.days is None or not request.reason:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields. Please provide owner_id, days, and reason.",
        )
    return await svc.suspensions.apply_suspension(request.owner_id, request.days, request.reason)


@app.delete("/api/suspensions/{owner_id}")
async def remove_suspension(owner_id: int, admin: Principal = Depends(require_admin), svc: Services = Depends(get_services)):
    return await svc.suspensions.remove_suspension(owner_id)


@app.get("/api/suspensions/me")
async def get_user_suspension_status(principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    return await _suspension_payload(svc, principal.id)


@app.get("/api/suspensions/{owner_id}")
async def get_suspension_status(owner_id: int, admin: Principal = Depends(require_admin), svc: Services = Depends(get_services)):
    return await _suspension_payload(svc, owner_id)


@app.get("/api/suspensions")
async def get_all_suspensions(admin: Principal = Depends(require_admin), svc: Services = Depends(get_services)):
    now = svc.suspensions.clock.now()
    return [
        {"owner_id": state.owner_id, "suspended": state.is_active(now), "details": state}
        for state in await svc.suspensions.all_states()
    ]


# QR Code Endpoints
class QRCodeCreate(BaseModel):
    code: str
    name: str


@app.post("/api/qrcodes", status_code=status.HTTP_201_CREATED)
async def create_qr_code(request: QRCodeCreate, admin: Principal = Depends(require_admin), svc: Services = Depends(get_services)):
    return unwrap(await svc.qr_codes.create(request.code, request.name))


@app.patch("/api/qrcodes/{code}/deactivate")
async def deactivate_qr_code(code: str, admin: Principal = Depends(require_admin), svc: Services = Depends(get_services)):
    return unwrap(await svc.qr_codes.deactivate(code))


@app.get("/api/qrcodes/{code}")
async def get_qr_code_details(code: str, principal: Principal = Depends(get_current_principal), svc: Services = Depends(get_services)):
    qr_code = await svc.qr_codes.get(code)
    if qr_code is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="QR code not found")
    return qr_code


@app.get("/api/qrcodes")
async def get_all_qr_codes(
    active: Optional[bool] = None,
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
):
    return await svc.qr_codes.all(active=active)


async def _sweep_periodically(interval: int):
    while True:
        await asyncio.sleep(interval)
        try:
            await services.demerits.run_sweep()
        except InfrastructureError:
            logger.warning("Scheduled demerit sweep skipped: storage unavailable")


@app.on_event("startup")
async def startup():
    await database.connect()
    # Create tables if they don't exist
    create_tables()
    if config.SWEEP_INTERVAL_SECONDS > 0:
        app.state.sweeper = asyncio.create_task(_sweep_periodically(config.SWEEP_INTERVAL_SECONDS))


@app.on_event("shutdown")
async def shutdown():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()
    await database.disconnect()


def run():
    import uvicorn
    uvicorn.run("gym_scheduler.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
