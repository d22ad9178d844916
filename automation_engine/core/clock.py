"""Time source used across the engine.

Timestamps are naive UTC datetimes, matching what the SQL store round-trips.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

