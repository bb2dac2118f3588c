"""
Wall clock for the escrow core.

MongoDB stores datetimes with millisecond precision, so every timestamp the
core writes is truncated to milliseconds first. Retention end dates then
compare exactly after a round trip.
"""

from datetime import datetime, timedelta
from typing import Callable

Clock = Callable[[], datetime]

MS_PER_DAY = 24 * 60 * 60 * 1000


def truncate_to_millis(value: datetime) -> datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utcnow() -> datetime:
    """Naive UTC now, truncated to milliseconds."""
    return truncate_to_millis(datetime.utcnow())


def to_millis(delta: timedelta) -> int:
    return delta // timedelta(milliseconds=1)


def ceil_days(delta: timedelta) -> int:
    """Whole days needed to cover the duration, rounded up."""
    ms = to_millis(delta)
    return -(-ms // MS_PER_DAY)
