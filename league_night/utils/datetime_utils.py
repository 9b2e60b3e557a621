"""
Datetime utility functions.
Provides timezone-aware "now" helpers and league-night date math.
"""

import os
from datetime import date, datetime, time, timedelta
from typing import Optional
import pytz


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def get_league_timezone():
    """Return the pytz timezone leagues are scheduled in (LEAGUE_TIMEZONE, default UTC)."""
    return pytz.timezone(os.getenv("LEAGUE_TIMEZONE", "UTC"))


def league_today(now: Optional[datetime] = None) -> date:
    """
    Get today's calendar date in the league timezone.

    Args:
        now: Optional aware datetime to use instead of the current time

    Returns:
        Local calendar date
    """
    now = now or utcnow()
    return now.astimezone(get_league_timezone()).date()


def next_occurrence(day_of_week: int, today: date) -> date:
    """
    Get the next date falling on an ISO weekday, counting today.

    Args:
        day_of_week: ISO weekday (1 = Monday ... 7 = Sunday)
        today: Reference date

    Returns:
        today if it already is that weekday, otherwise the next such date

    Examples:
        >>> next_occurrence(3, date(2026, 10, 14))  # Wednesday
        datetime.date(2026, 10, 14)
        >>> next_occurrence(1, date(2026, 10, 14))
        datetime.date(2026, 10, 19)
    """
    if day_of_week < 1 or day_of_week > 7:
        raise ValueError(f"day_of_week must be 1-7, got {day_of_week}")
    return today + timedelta(days=(day_of_week - today.isoweekday()) % 7)


def parse_start_time(value: str) -> time:
    """
    Parse an "HH:MM" (or "HH:MM:SS") start time.

    Raises:
        ValueError: If the value is not a valid clock time
    """
    if not isinstance(value, str):
        raise ValueError(f"Expected string start time, got {type(value)}")
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid start time: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


def local_start_datetime(night_date: date, start_time: str) -> datetime:
    """
    Combine a night's date and "HH:MM" start time into an aware UTC datetime.

    Args:
        night_date: Calendar date of the night in league local time
        start_time: Local start time string

    Returns:
        Start moment as a UTC datetime
    """
    tz = get_league_timezone()
    local = tz.localize(datetime.combine(night_date, parse_start_time(start_time)))
    return local.astimezone(pytz.UTC)
