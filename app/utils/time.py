"""
Time utilities.

Timestamps are stored as naive UTC; conversion to the configured display
timezone happens only when formatting messages.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from dateutil.rrule import rrulestr


def utc_now() -> datetime:
    """Get the current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """
    Normalize a datetime for storage.

    Args:
        dt: Datetime to convert (naive values are assumed to be UTC already)

    Returns:
        Naive datetime in UTC
    """
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(dt: datetime, tz_name: str) -> datetime:
    """
    Convert a stored (naive UTC) datetime to the given timezone.

    Args:
        dt: Datetime to convert (can be naive or aware)
        tz_name: IANA timezone name

    Returns:
        Aware datetime in the target timezone
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(ZoneInfo(tz_name))


def format_time(dt: datetime, tz_name: str, include_date: bool = True) -> str:
    """
    Format a datetime for display.

    Args:
        dt: Datetime to format
        tz_name: IANA timezone name used for display
        include_date: Whether to include the date

    Returns:
        Formatted string
    """
    local = to_local(dt, tz_name)

    if include_date:
        return local.strftime("%B %d, %Y at %I:%M %p")
    return local.strftime("%I:%M %p")


def day_bounds(now: datetime, tz_name: str) -> tuple:
    """
    Get the start and end of the local day containing `now`, in naive UTC.
    """
    local = to_local(now, tz_name)
    start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)
    return to_naive_utc(start), to_naive_utc(end)


def next_occurrence(rule: str, dtstart: datetime, after: datetime) -> Optional[datetime]:
    """
    Compute the next occurrence of an RRULE strictly after a given time.

    Args:
        rule: RFC 5545 recurrence rule, e.g. "FREQ=DAILY;INTERVAL=1"
        dtstart: First occurrence of the series (naive UTC)
        after: Occurrences at or before this instant are skipped (naive UTC)

    Returns:
        Next occurrence as naive UTC, or None when the rule is exhausted

    Raises:
        ValueError: If the rule cannot be parsed
    """
    recurrence = rrulestr(rule, dtstart=dtstart)
    return recurrence.after(after, inc=False)


def validate_recurrence_rule(rule: str) -> None:
    """Raise ValueError if the rule is not a valid RRULE."""
    rrulestr(rule, dtstart=utc_now())
