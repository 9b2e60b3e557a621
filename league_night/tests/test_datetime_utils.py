"""
Unit tests for league-night date math.
"""

from datetime import date, datetime

import pytest
import pytz

from league_night.utils.datetime_utils import (
    league_today,
    local_start_datetime,
    next_occurrence,
    parse_start_time,
)


WEDNESDAY = date(2026, 10, 14)


def test_next_occurrence_same_weekday_is_today():
    assert next_occurrence(3, WEDNESDAY) == WEDNESDAY


def test_next_occurrence_later_this_week():
    assert next_occurrence(5, WEDNESDAY) == date(2026, 10, 16)


def test_next_occurrence_wraps_to_next_week():
    assert next_occurrence(1, WEDNESDAY) == date(2026, 10, 19)
    assert next_occurrence(2, WEDNESDAY) == date(2026, 10, 20)


def test_next_occurrence_sunday():
    assert next_occurrence(7, WEDNESDAY) == date(2026, 10, 18)


@pytest.mark.parametrize("day_of_week", [0, 8, -1])
def test_next_occurrence_rejects_invalid_weekday(day_of_week):
    with pytest.raises(ValueError):
        next_occurrence(day_of_week, WEDNESDAY)


def test_parse_start_time():
    assert parse_start_time("18:30").hour == 18
    assert parse_start_time("18:30").minute == 30
    assert parse_start_time("07:05:09").second == 9


@pytest.mark.parametrize("value", ["", "18", "25:00", "aa:bb", None])
def test_parse_start_time_rejects_garbage(value):
    with pytest.raises(ValueError):
        parse_start_time(value)


def test_local_start_datetime_uses_league_timezone(monkeypatch):
    monkeypatch.setenv("LEAGUE_TIMEZONE", "America/Los_Angeles")
    start = local_start_datetime(WEDNESDAY, "18:00")
    # PDT is UTC-7 in October
    assert start == datetime(2026, 10, 15, 1, 0, tzinfo=pytz.UTC)


def test_league_today_respects_timezone(monkeypatch):
    monkeypatch.setenv("LEAGUE_TIMEZONE", "America/Los_Angeles")
    now = datetime(2026, 10, 15, 3, 0, tzinfo=pytz.UTC)
    assert league_today(now) == WEDNESDAY

    monkeypatch.setenv("LEAGUE_TIMEZONE", "UTC")
    assert league_today(now) == date(2026, 10, 15)
