"""Schedule parsing and opening-window evaluation.

Pure functions, no DB access. Days follow the 0=Sunday .. 6=Saturday
convention stored in ``queue_schedules.day_of_week``.
"""

from __future__ import annotations

import re
from datetime import datetime

from tutorqueue.core.errors import (
    InvalidScheduleDayError,
    InvalidTimeFormatError,
    InvalidTimeRangeError,
)

DAY_NAMES: tuple[str, ...] = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def parse_day_of_week(day: str) -> int:
    """Return the weekday index for a day name, case-insensitively."""
    normalized = day.strip().lower()
    for index, name in enumerate(DAY_NAMES):
        if name.lower() == normalized:
            return index
    raise InvalidScheduleDayError(day)


def day_name(day_of_week: int) -> str:
    return DAY_NAMES[day_of_week % 7]


def validate_time_format(value: str) -> None:
    """Accept ``H:MM`` or ``HH:MM`` in 24-hour time."""
    if not _TIME_RE.match(value):
        raise InvalidTimeFormatError(value)


def to_minutes(value: str) -> int:
    """Minutes since midnight for a validated ``HH:MM`` string."""
    validate_time_format(value)
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def validate_time_range(start: str, end: str) -> None:
    """Start must be strictly before end on the same day."""
    if to_minutes(start) >= to_minutes(end):
        raise InvalidTimeRangeError(start, end)


def weekday_index(now: datetime) -> int:
    """Convert Python's Monday=0 weekday to the stored Sunday=0 convention."""
    return (now.weekday() + 1) % 7


def is_open(now: datetime, start: str, end: str, shift_minutes: int = 0) -> bool:
    """Whether ``now`` falls inside ``[start - shift, end - shift)``.

    A positive shift moves both ends of the window earlier.
    """
    current = now.hour * 60 + now.minute
    opens = to_minutes(start) - shift_minutes
    closes = to_minutes(end) - shift_minutes
    return opens <= current < closes
