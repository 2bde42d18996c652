"""Tests for booking admission, changes and schedule queries."""
import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from gym_scheduler.config import SchedulingPolicy
from gym_scheduler.data_models import Reservation
from gym_scheduler.errors import Rejection, RejectionReason, ValidationError
from gym_scheduler.scheduler import BookingScheduler


def at(hour, minute=0, day=3):
    return datetime(2025, 3, day, hour, minute, tzinfo=timezone.utc)


def assert_rejected(result, reason):
    assert isinstance(result, Rejection), result
    assert result.reason == reason


async def test_admit_returns_the_new_reservation(scheduler):
    booking = await scheduler.admit(1, at(9), 2)

    assert isinstance(booking, Reservation)
    assert booking.owner_id == 1
    assert booking.start_time == at(9)
    assert booking.end_time == at(11)
    assert not booking.attended
    assert not booking.penalty_processed
    assert await scheduler.get(booking.id) == booking


async def test_duration_above_maximum_is_rejected(scheduler):
    assert_rejected(await scheduler.admit(1, at(9), 4), RejectionReason.DURATION_TOO_LONG)


@pytest.mark.parametrize("duration", [0, -1, 1.5, True])
async def test_malformed_duration_raises(scheduler, duration):
    with pytest.raises(ValidationError):
        await scheduler.admit(1, at(9), duration)


async def test_naive_start_raises(scheduler):
    with pytest.raises(ValidationError):
        await scheduler.admit(1, datetime(2025, 3, 3, 9, 0), 1)


async def test_self_overlap_is_rejected(scheduler):
    await scheduler.admit(1, at(9), 2)

    assert_rejected(await scheduler.admit(1, at(10), 2), RejectionReason.SELF_OVERLAP)
    # back-to-back is fine
    assert isinstance(await scheduler.admit(1, at(11), 1), Reservation)


async def test_daily_limit_counts_utc_day(scheduler):
    for hour in (8, 12, 16):
        assert isinstance(await scheduler.admit(1, at(hour), 1), Reservation)

    assert_rejected(await scheduler.admit(1, at(20), 1), RejectionReason.DAILY_LIMIT_REACHED)
    assert isinstance(await scheduler.admit(1, at(8, day=4), 1), Reservation)


async def test_capacity_scenario(scheduler):
    for owner in (1, 2, 3, 4):
        assert isinstance(await scheduler.admit(owner, at(9), 1), Reservation)

    assert_rejected(await scheduler.admit(5, at(9, 30), 1), RejectionReason.CAPACITY_EXCEEDED)
    assert isinstance(await scheduler.admit(5, at(10), 1), Reservation)


async def test_capacity_is_configurable(database, clock):
    roomy = BookingScheduler(database, SchedulingPolicy(max_concurrent_per_slot=5), clock)
    for owner in (1, 2, 3, 4, 5):
        assert isinstance(await roomy.admit(owner, at(9), 1), Reservation)
    assert_rejected(await roomy.admit(6, at(9), 1), RejectionReason.CAPACITY_EXCEEDED)


async def test_rules_are_checked_in_order(scheduler):
    for owner in (1, 2, 3, 4):
        await scheduler.admit(owner, at(9), 1)

    # owner 1 overlaps itself and the slot is full: self-overlap wins
    result = await scheduler.admit(1, at(9), 1)
    assert_rejected(result, RejectionReason.SELF_OVERLAP)


async def test_concurrent_admissions_never_exceed_capacity(scheduler):
    results = await asyncio.gather(*(scheduler.admit(owner, at(9), 1) for owner in range(1, 9)))

    admitted = [r for r in results if isinstance(r, Reservation)]
    rejected = [r for r in results if isinstance(r, Rejection)]
    assert len(admitted) == 4
    assert {r.reason for r in rejected} == {RejectionReason.CAPACITY_EXCEEDED}
    assert len(await scheduler.all()) == 4


async def test_concurrent_admissions_by_one_owner_never_overlap(scheduler):
    results = await asyncio.gather(scheduler.admit(1, at(9), 2), scheduler.admit(1, at(10), 2))

    assert sum(isinstance(r, Reservation) for r in results) == 1
    assert len(await scheduler.history(1)) == 1


async def test_modify_moves_the_reservation(scheduler):
    booking = await scheduler.admit(1, at(9), 1)

    moved = await scheduler.modify(booking.id, 1, new_start=at(9, 30), new_duration=2)

    assert isinstance(moved, Reservation)
    assert moved.id == booking.id
    assert moved.start_time == at(9, 30)
    assert moved.end_time == at(11, 30)
    assert await scheduler.get(booking.id) == moved


async def test_modify_does_not_count_the_reservation_against_itself(scheduler):
    for owner in (2, 3, 4):
        await scheduler.admit(owner, at(9), 1)
    booking = await scheduler.admit(1, at(9), 1)

    moved = await scheduler.modify(booking.id, 1, new_start=at(9, 30))
    assert isinstance(moved, Reservation)


async def test_modify_into_a_full_slot_is_rejected(scheduler):
    for owner in (2, 3, 4, 5):
        await scheduler.admit(owner, at(12), 1)
    booking = await scheduler.admit(1, at(9), 1)

    result = await scheduler.modify(booking.id, 1, new_start=at(12))
    assert_rejected(result, RejectionReason.CAPACITY_EXCEEDED)
    assert (await scheduler.get(booking.id)).start_time == at(9)


async def test_modify_rejects_strangers_and_unknown_ids(scheduler):
    booking = await scheduler.admit(1, at(9), 1)

    assert_rejected(await scheduler.modify(booking.id, 2, new_start=at(10)), RejectionReason.NOT_OWNER)
    assert_rejected(await scheduler.modify(999, 1, new_start=at(10)), RejectionReason.NOT_FOUND)


async def test_modify_and_cancel_lock_one_hour_before_start(scheduler, clock):
    booking = await scheduler.admit(1, at(9), 1)

    clock.set(at(8))  # exactly one hour before: locked
    assert_rejected(await scheduler.modify(booking.id, 1, new_duration=2), RejectionReason.LOCKED_WINDOW)
    assert_rejected(await scheduler.cancel(booking.id, 1), RejectionReason.LOCKED_WINDOW)

    clock.set(at(7, 59))
    assert isinstance(await scheduler.cancel(booking.id, 1), Reservation)


async def test_cancel_removes_the_reservation(scheduler):
    booking = await scheduler.admit(1, at(9), 1)

    assert_rejected(await scheduler.cancel(booking.id, 2), RejectionReason.NOT_OWNER)
    cancelled = await scheduler.cancel(booking.id, 1)

    assert cancelled == booking
    assert await scheduler.get(booking.id) is None
    assert_rejected(await scheduler.cancel(booking.id, 1), RejectionReason.NOT_FOUND)


async def test_day_and_history_queries(scheduler):
    early = await scheduler.admit(1, at(8), 1)
    late = await scheduler.admit(1, at(18), 1)
    other_day = await scheduler.admit(1, at(8, day=5), 1)
    await scheduler.admit(2, at(12), 1)

    assert [r.id for r in await scheduler.for_day(date(2025, 3, 3)) if r.owner_id == 1] == [early.id, late.id]
    assert [r.id for r in await scheduler.history(1)] == [other_day.id, late.id, early.id]


async def test_past_and_upcoming_split_at_now(scheduler, clock):
    first = await scheduler.admit(1, at(9), 1)
    second = await scheduler.admit(2, at(12), 1)
    third = await scheduler.admit(3, at(15), 1)

    clock.set(at(12))
    assert [r.id for r in await scheduler.past()] == [first.id]
    assert [r.id for r in await scheduler.upcoming()] == [second.id, third.id]


async def test_week_windows(scheduler, clock):
    monday = await scheduler.admit(1, at(9, day=3), 1)
    thursday = await scheduler.admit(1, at(9, day=6), 1)
    next_monday = await scheduler.admit(1, at(9, day=10), 1)
    clock.set(at(12, day=6))

    iso = await scheduler.for_week(date(2025, 3, 6))
    assert iso.start == at(0, day=3)
    assert [r.id for r in iso.past] == [monday.id, thursday.id]
    assert iso.upcoming == []

    rolling = await scheduler.for_week(date(2025, 3, 6), iso_week=False)
    assert rolling.start == at(0, day=6)
    assert [r.id for r in rolling.past] == [thursday.id]
    assert [r.id for r in rolling.upcoming] == [next_monday.id]


async def test_week_slot_counts(scheduler):
    await scheduler.admit(1, at(9), 2)
    await scheduler.admit(2, at(10), 1)

    counts = await scheduler.week_slot_counts(date(2025, 3, 3))
    assert len(counts) == 7 * 24
    assert counts[at(9)] == 1
    assert counts[at(10)] == 2
    assert sum(counts.values()) == 3


async def test_day_locks_do_not_accumulate(scheduler):
    for day in range(1, 28):
        await scheduler.admit(1, at(9, day=day), 1)

    assert scheduler.locks._locks == {}
