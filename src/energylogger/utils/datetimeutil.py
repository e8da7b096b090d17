"""Utility functions for date-time conversion tasks.

Functions:
----------
- to_datetime: Converts various date or time inputs to a timezone-aware `DateTime`
  object or formatted string.
- to_duration: Converts various time delta inputs to a `Duration` object.
- to_timezone: Resolves a timezone name (or None for the local zone) to a `Timezone`.
- to_time_of_day: Parses an "HH:MM" wall-clock time.
- next_daily_run: Next instant of a daily wall-clock time.

Example usage:
--------------

    >>> to_datetime(1761984000, as_string=True, in_timezone="UTC")
    '2025-11-01T08:00:00Z'

    >>> to_duration("30 days")
    Duration(days=30)

    >>> next_daily_run(to_datetime("2025-11-01T04:00:00", in_timezone="UTC"), (3, 0))
    DateTime(2025, 11, 2, 3, 0, 0, tzinfo=Timezone('UTC'))
"""

import re
from datetime import date, datetime, timedelta
from typing import Any, List, Literal, Optional, Tuple, Union, overload

import pendulum
from loguru import logger
from pendulum import DateTime, Duration
from pendulum.tz.timezone import Timezone

TIME_OF_DAY_PATTERN = re.compile(r"^(?P<hour>\d{1,2}):(?P<minute>\d{2})$")


def to_timezone(timezone: Optional[Union[str, Timezone]] = None) -> Timezone:
    """Resolve a timezone name to a pendulum `Timezone`.

    Args:
        timezone: IANA timezone name, a `Timezone`, or None for the local timezone.

    Returns:
        Timezone: The resolved timezone.

    Raises:
        ValueError: If the timezone name is unknown.
    """
    if timezone is None:
        return pendulum.local_timezone()
    if isinstance(timezone, Timezone):
        return timezone
    try:
        return pendulum.timezone(timezone)
    except Exception as e:
        raise ValueError(f"Invalid timezone '{timezone}': {e}") from e


@overload
def to_datetime(
    date_input: Optional[Any] = None,
    as_string: Literal[False] | None = None,
    in_timezone: Optional[Union[str, Timezone]] = None,
) -> DateTime: ...


@overload
def to_datetime(
    date_input: Optional[Any] = None,
    as_string: str | Literal[True] = True,
    in_timezone: Optional[Union[str, Timezone]] = None,
) -> str: ...


def to_datetime(
    date_input: Optional[Any] = None,
    as_string: Optional[Union[str, bool]] = None,
    in_timezone: Optional[Union[str, Timezone]] = None,
) -> Union[DateTime, str]:
    """Convert a date input into a pendulum DateTime object or a formatted string.

    Date strings without explicit timezone information are interpreted in `in_timezone`.

    Args:
        date_input (Optional[Any]): The date input to convert. Supported types include:
            - `str`: An ISO 8601 / RFC 3339 date string, with or without offset.
            - `pendulum.DateTime` or `datetime.datetime`.
            - `datetime.date`: converted to the start of that day.
            - `int` or `float`: A Unix timestamp, interpreted as seconds since the epoch (UTC).
            - `None`: The current date and time.
        as_string (Optional[Union[str, bool]]): Determines the output format:
            - `True`: Returns the datetime in ISO 8601 string format.
            - `"UTC"` or `"utc"`: Returns the datetime normalized to UTC as an ISO 8601 string.
            - `str`: A custom pendulum format string for the output (e.g., "YYYY-MM-DD HH:mm:ss").
            - `False` or `None` (default): Returns a `pendulum.DateTime` object.
        in_timezone (Optional[Union[str, Timezone]]): Target timezone for the result.
            Defaults to the local timezone if not provided.

    Returns:
        pendulum.DateTime or str: A timezone-aware DateTime, or its string representation.

    Raises:
        ValueError: If `date_input` is not a supported type, or the date string cannot be parsed.
    """
    tz = to_timezone(in_timezone)

    if isinstance(date_input, DateTime):
        dt = date_input
    elif isinstance(date_input, str):
        try:
            dt = pendulum.parse(date_input, tz=tz)
        except Exception as e:
            raise ValueError(f"Date string {date_input} does not match any known formats: {e}")
        if not isinstance(dt, DateTime):
            raise ValueError(f"Date string {date_input} is not a date-time.")
    elif date_input is None:
        dt = pendulum.now(tz)
    elif isinstance(date_input, datetime):
        dt = pendulum.instance(date_input, tz=tz)
    elif isinstance(date_input, date):
        dt = pendulum.datetime(date_input.year, date_input.month, date_input.day, tz=tz)
    elif isinstance(date_input, (int, float)):
        dt = pendulum.from_timestamp(date_input, tz="UTC")
    else:
        error_msg = f"Unsupported date input type: {type(date_input)}"
        logger.error(error_msg)
        raise ValueError(error_msg)

    # Represent in target timezone
    dt = dt.in_timezone(tz)

    if isinstance(as_string, str):
        if as_string.lower() == "utc":
            return dt.in_timezone("UTC").to_iso8601_string()
        return dt.format(as_string)
    if isinstance(as_string, bool) and as_string is True:
        return dt.to_iso8601_string()

    return dt


def to_duration(
    input_value: Union[timedelta, str, int, float, Tuple[int, int, int, int], List[int]],
) -> Duration:
    """Converts various input types into a pendulum Duration.

    Args:
        input_value (Union[timedelta, str, int, float, tuple, list]): Input to be converted:
            - str: A duration string like "30 days", "5 hours", or a combination.
            - int/float: Number representing seconds.
            - tuple/list: A tuple or list in the format (days, hours, minutes, seconds).

    Returns:
        Duration: A duration corresponding to the input value.

    Raises:
        ValueError: If the input format is not supported.

    Examples:
        >>> to_duration("2 days 5 hours")
        Duration(days=2, hours=5)

        >>> to_duration(3600)
        Duration(hours=1)
    """
    if isinstance(input_value, timedelta):
        return pendulum.duration(seconds=input_value.total_seconds())

    if isinstance(input_value, (int, float)):
        return pendulum.duration(seconds=input_value)

    if isinstance(input_value, (tuple, list)):
        if len(input_value) == 4:
            days, hours, minutes, seconds = input_value
            return pendulum.duration(days=days, hours=hours, minutes=minutes, seconds=seconds)
        error_msg = f"Expected a tuple or list of length 4, got {len(input_value)}"
        logger.error(error_msg)
        raise ValueError(error_msg)

    if isinstance(input_value, str):
        time_units = {
            "day": 86400,
            "hour": 3600,
            "minute": 60,
            "second": 1,
        }
        matches = re.findall(r"(\d+)\s*(days?|hours?|minutes?|seconds?)", input_value)
        if not matches:
            error_msg = f"Invalid time string format '{input_value}'"
            logger.error(error_msg)
            raise ValueError(error_msg)

        total_seconds = 0
        for value, unit in matches:
            total_seconds += int(value) * time_units[unit.lower().rstrip("s")]
        return pendulum.duration(seconds=total_seconds)

    error_msg = f"Unsupported input type: {type(input_value)}"
    logger.error(error_msg)
    raise ValueError(error_msg)


def to_time_of_day(value: str) -> tuple[int, int]:
    """Parse a wall-clock time of day.

    Args:
        value: Time of day as "HH:MM" (24 h clock).

    Returns:
        tuple[int, int]: (hour, minute).

    Raises:
        ValueError: If the value is not a valid time of day.
    """
    match = TIME_OF_DAY_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid time of day '{value}', expected 'HH:MM'.")
    hour, minute = int(match["hour"]), int(match["minute"])
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time of day '{value}', out of range.")
    return hour, minute


def next_daily_run(now: DateTime, time_of_day: tuple[int, int]) -> DateTime:
    """Next instant of a daily wall-clock time.

    Takes today's date at the given time in the timezone of `now`. If that instant is not
    after `now`, the same wall-clock time on the next day is used.

    Args:
        now: Current (timezone-aware) instant.
        time_of_day: (hour, minute).

    Returns:
        DateTime: The next scheduled instant.
    """
    hour, minute = time_of_day
    target = now.set(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target = target.add(days=1)
    return target
