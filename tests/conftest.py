"""Shared fixtures: a fresh sqlite database per test and a clock that only moves on request."""
import os
import tempfile
from datetime import datetime, timezone

# must be in place before gym_scheduler.config reads the environment
_API_DIR = tempfile.mkdtemp(prefix="gym-scheduler-api-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_API_DIR, 'api.db')}"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["ALGORITHM"] = "HS256"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"

import pytest
from databases import Database

from gym_scheduler.attendance import AttendanceTracker
from gym_scheduler.clock import FixedClock
from gym_scheduler.config import SchedulingPolicy
from gym_scheduler.database import create_tables
from gym_scheduler.demerits import DemeritEngine
from gym_scheduler.qr_codes import QRCodeRegistry
from gym_scheduler.scheduler import BookingScheduler
from gym_scheduler.suspension import SuspensionPolicy


def at(hour, minute=0, day=3, month=3):
    """An instant on the test calendar: March 2025, in UTC. The 3rd is a Monday."""
    return datetime(2025, month, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
async def database(tmp_path):
    url = f"sqlite:///{tmp_path / 'gym.db'}"
    create_tables(url)
    db = Database(url)
    await db.connect()
    yield db
    await db.disconnect()


@pytest.fixture
def clock():
    return FixedClock(at(7))


@pytest.fixture
def policy():
    return SchedulingPolicy()


@pytest.fixture
def scheduler(database, policy, clock):
    return BookingScheduler(database, policy, clock)


@pytest.fixture
def tracker(database, policy, clock):
    return AttendanceTracker(database, policy, clock)


@pytest.fixture
def demerits(database, policy, clock):
    return DemeritEngine(database, policy, clock)


@pytest.fixture
def suspensions(database, policy, clock):
    return SuspensionPolicy(database, policy, clock)


@pytest.fixture
def qr_registry(database, clock):
    return QRCodeRegistry(database, clock)
