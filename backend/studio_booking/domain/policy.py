"""
Cancellation policy.

Class times are stored as a local date + time in the studio's timezone. All
policy math happens on aware UTC datetimes.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo


def class_start_at(class_date: date, start_time: time, tz_name: str) -> datetime:
    local = datetime.combine(class_date, start_time, tzinfo=ZoneInfo(tz_name))
    return local.astimezone(timezone.utc)


def ensure_aware(moment: datetime) -> datetime:
    """Naive datetimes are treated as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass(frozen=True)
class CancellationOutcome:
    late: bool
    hours_until_start: float


def evaluate_cancellation(
    starts_at: datetime,
    as_of: datetime,
    window_hours: int,
) -> CancellationOutcome:
    """
    A cancellation is late when it happens inside the window before class
    start (or after the class has started). Exactly window_hours ahead is early.
    """
    hours = (ensure_aware(starts_at) - ensure_aware(as_of)).total_seconds() / 3600
    return CancellationOutcome(late=hours < window_hours, hours_until_start=hours)
