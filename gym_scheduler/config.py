# config.py
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./gym_scheduler/gym.db")
SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", 8000))
# 0 disables the background sweep; it can still be triggered on demand
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", 0))


@dataclass(frozen=True)
class SchedulingPolicy:
    """Limits and thresholds shared by the scheduler, tracker, demerit engine and suspension policy."""
    max_duration_hours: int = 3
    max_daily_bookings: int = 3
    max_concurrent_per_slot: int = 4
    lockout: timedelta = timedelta(hours=1)
    check_in_before: timedelta = timedelta(minutes=10)
    check_in_after: timedelta = timedelta(minutes=10)
    max_session: timedelta = timedelta(hours=5)
    # reservations are scored once their start is this far in the past
    sweep_grace: timedelta = timedelta(0)
    no_show_points: int = 1
    missing_checkout_points: int = 1
    overstay_points: int = 1
    penalty_window: timedelta = timedelta(days=30)
    # (points strictly above, suspension days), highest first
    suspension_tiers: Tuple[Tuple[int, int], ...] = ((15, 30), (10, 14), (5, 7))


def load_policy() -> SchedulingPolicy:
    """Builds a policy from the environment, falling back to the defaults."""
    window = int(os.getenv("CHECK_IN_WINDOW_MINUTES", 10))
    return SchedulingPolicy(
        max_duration_hours=int(os.getenv("MAX_DURATION_HOURS", 3)),
        max_daily_bookings=int(os.getenv("MAX_DAILY_BOOKINGS", 3)),
        max_concurrent_per_slot=int(os.getenv("MAX_CONCURRENT_PER_SLOT", 4)),
        lockout=timedelta(minutes=int(os.getenv("LOCKOUT_MINUTES", 60))),
        check_in_before=timedelta(minutes=window),
        check_in_after=timedelta(minutes=window),
        max_session=timedelta(hours=int(os.getenv("MAX_SESSION_HOURS", 5))),
        sweep_grace=timedelta(minutes=int(os.getenv("SWEEP_GRACE_MINUTES", 0))),
    )
