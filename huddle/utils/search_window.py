"""Search window and availability horizon helpers.

Availability horizon policy:
- Members enter free time for the current and the next calendar week.
- Weeks start on Monday 00:00 UTC.
- Group searches default to the next ``days`` days, starting at the next
  quarter hour, and never reach past the horizon cap.

All inputs and outputs use UTC.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta

QUARTER_HOUR = timedelta(minutes=15)


@dataclass(frozen=True)
class SearchWindow:
    """A default search window for group polling."""

    start: datetime
    end: datetime
    label: str


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def get_week_start(utc_now: datetime) -> date:
    """Return the Monday of the week containing ``utc_now``."""
    utc_now = _as_utc(utc_now)
    # weekday(): Monday=0 ... Sunday=6.
    return utc_now.date() - timedelta(days=utc_now.weekday())


def get_availability_horizon(utc_now: datetime, weeks: int = 2) -> tuple[datetime, datetime]:
    """Return [Monday of this week, Monday ``weeks`` weeks later) in UTC."""
    start = datetime.combine(get_week_start(utc_now), datetime.min.time(), tzinfo=UTC)
    return start, start + timedelta(weeks=weeks)


def round_up_to_quarter_hour(value: datetime) -> datetime:
    value = _as_utc(value)
    floored = value.replace(minute=value.minute - value.minute % 15, second=0, microsecond=0)
    return floored if floored == value else floored + QUARTER_HOUR


def format_window_label(start: datetime, end: datetime) -> str:
    """Return e.g. 'Mar 10 - Mar 17 UTC'."""
    return (
        f"{start.strftime('%b %d').replace(' 0', ' ')} - "
        f"{end.strftime('%b %d').replace(' 0', ' ')} UTC"
    )


def get_default_search_window(
    utc_now: datetime, days: int = 7, horizon_days: int = 90
) -> SearchWindow:
    start = round_up_to_quarter_hour(utc_now)
    end = start + timedelta(days=min(days, horizon_days))
    return SearchWindow(start=start, end=end, label=format_window_label(start, end))
