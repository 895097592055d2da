from __future__ import annotations

from datetime import datetime, tzinfo

from huddle.engine.availability import CandidateSlot
from huddle.engine.intervals import TimeInterval


def _clock(value: datetime) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def format_interval_label(interval: TimeInterval, tz: tzinfo | None = None) -> str:
    """Return e.g. 'Tue, Mar 10 · 10:00 AM - 11:30 AM'."""
    start = interval.start.astimezone(tz) if tz else interval.start
    end = interval.end.astimezone(tz) if tz else interval.end
    day = start.strftime("%a, %b %d").replace(" 0", " ")
    if start.date() == end.date():
        return f"{day} · {_clock(start)} - {_clock(end)}"
    end_day = end.strftime("%a, %b %d").replace(" 0", " ")
    return f"{day} {_clock(start)} - {end_day} {_clock(end)}"


def describe_coverage(slot: CandidateSlot) -> str:
    if slot.available_count == slot.total_members:
        return "Everyone is free"
    return f"{slot.available_count} of {slot.total_members} free"


def generate_group_link(base_url: str, group_id: str) -> str:
    return f"{base_url}?group={group_id}"


def generate_confirmation_text(
    group_name: str,
    interval: TimeInterval,
    group_url: str,
    tz: tzinfo | None = None,
) -> str:
    lines = [
        f"{group_name} is meeting {format_interval_label(interval, tz)}",
        f"Details: {group_url}",
        "If your schedule changes, update it so the group can reschedule.",
    ]
    return "\n".join(lines)
