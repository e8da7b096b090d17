"""Test Module for pendulum.datetimeutil Module."""

from datetime import date, datetime, timedelta

import pendulum
import pytest

from energylogger.utils.datetimeutil import (
    next_daily_run,
    to_datetime,
    to_duration,
    to_time_of_day,
    to_timezone,
)

# -----------------------------
# to_datetime
# -----------------------------


@pytest.mark.parametrize(
    "date_input, as_string, in_timezone, expected",
    [
        (1761984000, True, "UTC", "2025-11-01T08:00:00Z"),
        (1761984000, True, "Europe/Berlin", "2025-11-01T09:00:00+01:00"),
        ("2025-11-01T10:00:00", True, "Europe/Berlin", "2025-11-01T10:00:00+01:00"),
        ("2025-11-01T10:00:00Z", True, "Europe/Berlin", "2025-11-01T11:00:00+01:00"),
        ("2025-11-01T10:00:00+01:00", "UTC", "Europe/Berlin", "2025-11-01T09:00:00Z"),
        (date(2025, 11, 1), "YYYY-MM-DD HH:mm", "UTC", "2025-11-01 00:00"),
        (datetime(2025, 11, 1, 10, 0), True, "UTC", "2025-11-01T10:00:00Z"),
    ],
)
def test_to_datetime(date_input, as_string, in_timezone, expected):
    assert to_datetime(date_input, as_string=as_string, in_timezone=in_timezone) == expected


def test_to_datetime_pendulum_instance_keeps_instant():
    dt = pendulum.datetime(2025, 6, 1, 12, 0, tz="UTC")
    converted = to_datetime(dt, in_timezone="Europe/Berlin")
    assert converted == dt
    assert converted.timezone_name == "Europe/Berlin"


def test_to_datetime_now():
    before = pendulum.now("UTC")
    now = to_datetime(in_timezone="UTC")
    assert before <= now <= pendulum.now("UTC")


@pytest.mark.parametrize("date_input", ["not a date", "2025-11-01T25:00:00", [2025, 11, 1]])
def test_to_datetime_invalid(date_input):
    with pytest.raises(ValueError):
        to_datetime(date_input, in_timezone="UTC")


def test_to_datetime_date_only_string_is_midnight():
    assert to_datetime("2025-11-01", in_timezone="UTC") == pendulum.datetime(2025, 11, 1, tz="UTC")


# -----------------------------
# to_timezone
# -----------------------------


def test_to_timezone():
    assert to_timezone("Europe/Berlin").name == "Europe/Berlin"
    assert to_timezone(None) == pendulum.local_timezone()
    tz = pendulum.timezone("UTC")
    assert to_timezone(tz) is tz


def test_to_timezone_invalid():
    with pytest.raises(ValueError, match="Invalid timezone"):
        to_timezone("Atlantis/Capital")


# -----------------------------
# to_duration
# -----------------------------


@pytest.mark.parametrize(
    "input_value, expected_seconds",
    [
        (3600, 3600),
        (0.5, 0.5),
        (timedelta(days=1), 86400),
        ("30 days", 30 * 86400),
        ("2 days 5 hours", 2 * 86400 + 5 * 3600),
        ("1 minute 30 seconds", 90),
        ((1, 2, 3, 4), 86400 + 7200 + 180 + 4),
        ([0, 0, 1, 0], 60),
    ],
)
def test_to_duration(input_value, expected_seconds):
    assert to_duration(input_value).total_seconds() == expected_seconds


@pytest.mark.parametrize("input_value", ["soon", (1, 2), {"days": 1}])
def test_to_duration_invalid(input_value):
    with pytest.raises(ValueError):
        to_duration(input_value)


# -----------------------------
# to_time_of_day / next_daily_run
# -----------------------------


@pytest.mark.parametrize(
    "value, expected",
    [("03:00", (3, 0)), ("3:05", (3, 5)), (" 23:59 ", (23, 59)), ("00:00", (0, 0))],
)
def test_to_time_of_day(value, expected):
    assert to_time_of_day(value) == expected


@pytest.mark.parametrize("value", ["24:00", "12:60", "noon", "3", "03:0", "-1:00"])
def test_to_time_of_day_invalid(value):
    with pytest.raises(ValueError):
        to_time_of_day(value)


def test_next_daily_run_same_day():
    now = pendulum.datetime(2025, 11, 1, 2, 59, 59, tz="UTC")
    assert next_daily_run(now, (3, 0)) == pendulum.datetime(2025, 11, 1, 3, 0, tz="UTC")


def test_next_daily_run_next_day():
    now = pendulum.datetime(2025, 12, 31, 3, 0, 1, tz="UTC")
    assert next_daily_run(now, (3, 0)) == pendulum.datetime(2026, 1, 1, 3, 0, tz="UTC")


def test_next_daily_run_across_dst_change():
    # Europe/Berlin switches back to CET in the night to 2025-10-26
    now = pendulum.datetime(2025, 10, 25, 4, 0, tz="Europe/Berlin")
    run = next_daily_run(now, (3, 0))
    assert run == pendulum.datetime(2025, 10, 26, 3, 0, tz="Europe/Berlin")
    assert run.utcoffset() == timedelta(hours=1)
