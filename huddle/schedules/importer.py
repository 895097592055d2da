"""Parse pasted class timetables into busy events and free time.

Accepted input is loose, line-oriented text::

    Monday
    9:00 AM - 10:30 AM Calculus - Room 101
    1 PM Lab | Science Hall
    Wed:
    14:00-15:30 Study group @ Library

A line that is only a weekday name switches the current day. Lines with a time
range become busy events; a single time gets a one-hour default length.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from dateutil import parser as date_parser

from huddle.engine.intervals import TimeInterval, subtract_intervals

DEFAULT_EVENT_LENGTH = timedelta(hours=1)
# Events listed before any day heading are filed under Tuesday.
DEFAULT_WEEKDAY = 1

DAY_NAMES = {
    "monday": 0,
    "mon": 0,
    "tuesday": 1,
    "tue": 1,
    "tues": 1,
    "wednesday": 2,
    "wed": 2,
    "thursday": 3,
    "thu": 3,
    "thur": 3,
    "thurs": 3,
    "friday": 4,
    "fri": 4,
    "saturday": 5,
    "sat": 5,
    "sunday": 6,
    "sun": 6,
}

_MERIDIEM = r"[AaPp]\.?[Mm]\.?"
_LOOSE_TIME = rf"\b\d{{1,2}}(?::\d{{2}})?\s*(?:{_MERIDIEM})?"
_STRICT_TIME = rf"\d{{1,2}}(?::\d{{2}}\s*(?:{_MERIDIEM})?|\s*{_MERIDIEM})"
TIME_RANGE_PATTERN = re.compile(
    rf"(?P<start>{_LOOSE_TIME})\s*(?:-|–|—|to)\s*(?P<end>{_STRICT_TIME})"
)
SINGLE_TIME_PATTERN = re.compile(rf"\d{{1,2}}:\d{{2}}\s*(?:{_MERIDIEM})?|\d{{1,2}}\s*{_MERIDIEM}")
MERIDIEM_PATTERN = re.compile(r"([AaPp])\.?[Mm]\.?\s*$")
SEPARATOR_PATTERN = re.compile(r"[-|,@:]")


@dataclass(frozen=True)
class BusyEvent:
    weekday: int
    start: time
    end: time
    title: str
    location: str


def _parse_clock(raw: str) -> time:
    return date_parser.parse(raw.strip().replace(".", "")).time()


def _parse_range(raw_start: str, raw_end: str) -> tuple[time, time] | None:
    end_meridiem = MERIDIEM_PATTERN.search(raw_end)
    if end_meridiem and not MERIDIEM_PATTERN.search(raw_start):
        raw_start = f"{raw_start.strip()} {end_meridiem.group(1).upper()}M"
    try:
        start, end = _parse_clock(raw_start), _parse_clock(raw_end)
    except (ValueError, OverflowError):
        return None
    if start >= end:
        return None
    return start, end


def _split_details(text: str) -> tuple[str, str]:
    cleaned = text.strip().lstrip("-|,@:").strip()
    parts = [part.strip() for part in SEPARATOR_PATTERN.split(cleaned)]
    title = parts[0] if parts and parts[0] else "Event"
    location = parts[1] if len(parts) > 1 and parts[1] else "Location TBD"
    return title, location


def _weekday_heading(line: str) -> int | None:
    token = line.strip().rstrip(":").strip().lower()
    return DAY_NAMES.get(token)


def parse_schedule_line(line: str, weekday: int) -> BusyEvent | None:
    match = TIME_RANGE_PATTERN.search(line)
    if match:
        parsed = _parse_range(match.group("start"), match.group("end"))
        if parsed is None:
            return None
        start, end = parsed
        remainder = line[: match.start()] + line[match.end() :]
    else:
        single = SINGLE_TIME_PATTERN.search(line)
        if not single:
            return None
        try:
            start = _parse_clock(single.group(0))
        except (ValueError, OverflowError):
            return None
        end_dt = datetime.combine(date.min, start) + DEFAULT_EVENT_LENGTH
        end = end_dt.time() if end_dt.date() == date.min else time.max
        remainder = line[: single.start()] + line[single.end() :]
    title, location = _split_details(remainder)
    return BusyEvent(weekday=weekday, start=start, end=end, title=title, location=location)


def parse_schedule_text(text: str) -> list[BusyEvent]:
    events: list[BusyEvent] = []
    weekday = DEFAULT_WEEKDAY
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        heading = _weekday_heading(line)
        if heading is not None:
            weekday = heading
            continue
        event = parse_schedule_line(line, weekday)
        if event is not None:
            events.append(event)
    return events


def busy_to_free(
    events: Iterable[BusyEvent],
    week_start: date,
    day_start: time = time(8, 0),
    day_end: time = time(22, 0),
    weeks: int = 2,
    tz: tzinfo = UTC,
) -> list[TimeInterval]:
    """Turn a weekly timetable into free intervals for ``weeks`` weeks from ``week_start``.

    Each day is free between ``day_start`` and ``day_end`` except where a busy
    event falls; events repeat every week on their weekday.
    """
    by_weekday: dict[int, list[BusyEvent]] = {}
    for event in events:
        by_weekday.setdefault(event.weekday, []).append(event)

    free: list[TimeInterval] = []
    for offset in range(weeks * 7):
        day = week_start + timedelta(days=offset)
        window_start = datetime.combine(day, day_start, tzinfo=tz)
        window_end = datetime.combine(day, day_end, tzinfo=tz)
        if window_start >= window_end:
            continue
        busy = [
            TimeInterval(
                datetime.combine(day, event.start, tzinfo=tz),
                datetime.combine(day, event.end, tzinfo=tz),
            )
            for event in by_weekday.get(day.weekday(), [])
        ]
        free.extend(subtract_intervals([TimeInterval(window_start, window_end)], busy))
    return free
