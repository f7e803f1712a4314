"""Time helpers shared by the ledger, prober and read projections.

All timestamps are stored and compared as naive UTC datetimes.
"""

from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional


@dataclass(frozen=True)
class TimeAgo:
    """Human-readable distance between a timestamp and now."""

    value: int
    unit: str
    text: str
    is_recent: bool


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _plural(value: int, unit: str) -> str:
    return f"1 {unit} ago" if value == 1 else f"{value} {unit}s ago"


def time_ago(value: Optional[datetime], now: Optional[datetime] = None) -> TimeAgo:
    """Describe how long ago ``value`` happened.

    Anything under a day is considered recent. ``None`` means the
    timestamp was never recorded.

    Example:
        >>> time_ago(utc_now() - timedelta(minutes=3)).text
        '3 minutes ago'
    """
    if value is None:
        return TimeAgo(value=0, unit="never", text="Never", is_recent=False)

    now = to_naive_utc(now) if now else utc_now()
    seconds = max(0, int((now - to_naive_utc(value)).total_seconds()))
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if seconds < 60:
        return TimeAgo(seconds, "seconds", _plural(seconds, "second"), True)
    if minutes < 60:
        return TimeAgo(minutes, "minutes", _plural(minutes, "minute"), True)
    if hours < 24:
        return TimeAgo(hours, "hours", _plural(hours, "hour"), True)
    if days < 7:
        return TimeAgo(days, "days", _plural(days, "day"), False)
    if days // 7 < 4:
        return TimeAgo(days // 7, "weeks", _plural(days // 7, "week"), False)
    if days // 30 < 12:
        return TimeAgo(days // 30, "months", _plural(days // 30, "month"), False)
    return TimeAgo(days // 365, "years", _plural(days // 365, "year"), False)


def calculate_uptime(
    last_seen: Optional[datetime],
    threshold_minutes: int = 5,
    now: Optional[datetime] = None,
) -> int:
    """Estimate an uptime percentage from the last time equipment was seen.

    Seen within ``threshold_minutes`` counts as fully up; older sightings
    decay in steps down to 0 after three days.
    """
    if last_seen is None:
        return 0

    now = to_naive_utc(now) if now else utc_now()
    elapsed = now - to_naive_utc(last_seen)

    if elapsed <= timedelta(minutes=threshold_minutes):
        return 100
    if elapsed <= timedelta(hours=1):
        return 95
    if elapsed <= timedelta(hours=6):
        return 85
    if elapsed <= timedelta(hours=24):
        return 70
    if elapsed <= timedelta(hours=72):
        return 50
    return 0
