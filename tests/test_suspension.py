"""Tests for suspension tiers and suspension state."""
from datetime import datetime, timedelta, timezone

import pytest

from gym_scheduler.clock import to_storage
from gym_scheduler.data_models import PenaltyReason
from gym_scheduler.errors import ValidationError
from gym_scheduler.models import penalty_records


def at(hour, minute=0, day=3):
    return datetime(2025, 3, day, hour, minute, tzinfo=timezone.utc)


async def add_points(database, owner_id, points, issued_at):
    await database.execute(
        penalty_records.insert().values(
            owner_id=owner_id,
            reason=PenaltyReason.NO_SHOW.value,
            points=points,
            issued_at=to_storage(issued_at),
            reservation_id=None,
            session_id=None,
        )
    )


@pytest.mark.parametrize(
    "points, days",
    [(16, 30), (15, 14), (11, 14), (10, 7), (6, 7), (5, 0), (3, 0), (0, 0)],
)
async def test_tiers(database, suspensions, points, days):
    if points:
        await add_points(database, 1, points, at(6))

    decision = await suspensions.evaluate(1, at(7))

    assert decision.total_points == points
    assert decision.suspension_days == days
    assert decision.suspends is (days > 0)
    if days:
        assert decision.active_until == at(7) + timedelta(days=days)
    else:
        assert decision.active_until is None


async def test_only_the_trailing_thirty_days_count(database, suspensions):
    await add_points(database, 1, 10, at(7) - timedelta(days=31))
    await add_points(database, 1, 6, at(7) - timedelta(days=29))
    await add_points(database, 2, 20, at(6))

    decision = await suspensions.evaluate(1, at(7))

    assert decision.total_points == 6
    assert decision.suspension_days == 7


async def test_apply_auto_records_the_suspension(database, suspensions):
    await add_points(database, 1, 16, at(6))

    decision = await suspensions.apply_auto(1, at(7))

    assert decision.applied
    state = await suspensions.state(1)
    assert state.active_until == decision.active_until
    assert state.source == "auto"
    assert await suspensions.is_suspended(1, at(8))
    assert await suspensions.remaining(1, at(7)) == timedelta(days=30)


async def test_apply_auto_below_threshold_changes_nothing(database, suspensions):
    await add_points(database, 1, 3, at(6))

    decision = await suspensions.apply_auto(1, at(7))

    assert not decision.suspends
    assert not await suspensions.is_suspended(1, at(7))
    assert await suspensions.all_states() == []


async def test_suspension_lapses_on_its_own(suspensions, clock):
    await suspensions.apply_suspension(1, 7, "Repeated no-shows", now=at(7))

    assert await suspensions.is_suspended(1)
    clock.advance(days=7)
    assert not await suspensions.is_suspended(1)
    assert await suspensions.remaining(1) is None
    # the stored state is untouched
    assert (await suspensions.state(1)).active_until == at(7) + timedelta(days=7)


async def test_manual_suspension_wins_over_auto(database, suspensions):
    await suspensions.apply_suspension(1, 60, "Equipment damage", now=at(7))
    await add_points(database, 1, 16, at(6))

    decision = await suspensions.apply_auto(1, at(8))

    assert decision.suspends
    assert not decision.applied
    state = await suspensions.state(1)
    assert state.source == "manual"
    assert state.reason == "Equipment damage"
    assert state.active_until == at(7) + timedelta(days=60)


async def test_manual_suspension_overwrites_auto(database, suspensions):
    await add_points(database, 1, 6, at(6))
    await suspensions.apply_auto(1, at(7))

    await suspensions.apply_suspension(1, 1, "Reduced on appeal", now=at(8))

    state = await suspensions.state(1)
    assert state.active_until == at(8) + timedelta(days=1)
    assert state.source == "manual"


async def test_remove_suspension(suspensions):
    await suspensions.apply_suspension(1, 7, "Repeated no-shows", now=at(7))

    await suspensions.remove_suspension(1)

    assert not await suspensions.is_suspended(1, at(8))
    state = await suspensions.state(1)
    assert state.active_until is None
    assert state.reason is None


@pytest.mark.parametrize("days, reason", [(0, "x"), (-3, "x"), (2.5, "x"), (3, "")])
async def test_manual_suspension_validates_input(suspensions, days, reason):
    with pytest.raises(ValidationError):
        await suspensions.apply_suspension(1, days, reason)


async def test_no_shows_feed_the_suspension_tiers(scheduler, demerits, suspensions, database):
    # six no-shows spread over two days
    for day in (3, 4):
        for hour in (8, 12, 16):
            await scheduler.admit(1, at(hour, day=day), 1)

    await demerits.run_sweep(at(20, day=4))
    decision = await suspensions.evaluate(1, at(21, day=4))

    assert decision.total_points == 6
    assert decision.suspension_days == 7


async def test_applied_decision_matches_stored_state(database, suspensions):
    await suspensions.apply_suspension(1, 2, "Equipment damage", now=at(7))
    await add_points(database, 1, 16, at(6))

    blocked = await suspensions.apply_auto(1, at(8))
    state = await suspensions.state(1)
    assert blocked.active_until != state.active_until
    assert not blocked.applied

    # once the manual suspension lapses the tier is recorded
    later = await suspensions.apply_auto(1, at(8, day=5))
    state = await suspensions.state(1)
    assert later.applied
    assert state.active_until == later.active_until
    assert state.source == "auto"
