"""Tests for the split between business rejections and storage failures."""
from datetime import datetime, timezone

import pytest

from gym_scheduler.errors import InfrastructureError


def at(hour, minute=0, day=3):
    return datetime(2025, 3, day, hour, minute, tzinfo=timezone.utc)


async def test_missing_table_surfaces_as_infrastructure_error(database, scheduler):
    await database.execute("DROP TABLE reservations")

    with pytest.raises(InfrastructureError) as excinfo:
        await scheduler.admit(1, at(9), 1)

    assert excinfo.value.__cause__ is not None
    assert "Storage unavailable" in str(excinfo.value)


async def test_queries_are_guarded_too(database, tracker, suspensions):
    await database.execute("DROP TABLE attendance_sessions")
    await database.execute("DROP TABLE suspensions")

    with pytest.raises(InfrastructureError):
        await tracker.status(1)
    with pytest.raises(InfrastructureError):
        await suspensions.is_suspended(1)
