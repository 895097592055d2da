from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, date, time, tzinfo
from typing import Any

from huddle.db.sqlite_client import delete_schedule, get_free_interval_rows, replace_free_intervals
from huddle.engine.intervals import (
    TimeInterval,
    format_timestamp,
    normalize_intervals,
    subtract_intervals,
)
from huddle.groups.coordination import handle_schedule_change
from huddle.schedules.importer import busy_to_free, parse_schedule_text
from huddle.schedules.store import rows_to_intervals

logger = logging.getLogger(__name__)


def get_all_free_intervals(conn: Any, user_id: str) -> list[TimeInterval]:
    return rows_to_intervals(get_free_interval_rows(conn, user_id))


def set_free_intervals(
    conn: Any,
    user_id: str,
    intervals: Iterable[TimeInterval],
    source: str = "manual",
    raw_text: str = "",
) -> list[str]:
    """Replace a user's free time and re-check their confirmed meetings.

    Returns the ids of groups whose confirmation went stale.
    """
    normalized = normalize_intervals(intervals)
    replace_free_intervals(
        conn,
        user_id,
        [(format_timestamp(i.start), format_timestamp(i.end)) for i in normalized],
        source=source,
        raw_text=raw_text,
    )
    logger.info("[SCHEDULE] user=%s intervals=%s source=%s", user_id, len(normalized), source)
    return handle_schedule_change(conn, user_id)


def add_free_interval(conn: Any, user_id: str, interval: TimeInterval) -> list[str]:
    current = get_all_free_intervals(conn, user_id)
    return set_free_intervals(conn, user_id, [*current, interval])


def remove_free_time(conn: Any, user_id: str, interval: TimeInterval) -> list[str]:
    current = get_all_free_intervals(conn, user_id)
    return set_free_intervals(conn, user_id, subtract_intervals(current, [interval]))


def clear_availability(conn: Any, user_id: str) -> list[str]:
    """Remove the user's schedule record entirely; they go back to having no data."""
    removed = delete_schedule(conn, user_id)
    if removed:
        logger.info("[SCHEDULE] user=%s status=cleared", user_id)
    return handle_schedule_change(conn, user_id)


def import_schedule_text(
    conn: Any,
    user_id: str,
    text: str,
    week_start: date,
    day_start: time = time(8, 0),
    day_end: time = time(22, 0),
    weeks: int = 2,
    tz: tzinfo = UTC,
) -> list[str]:
    events = parse_schedule_text(text)
    if not events:
        raise ValueError("No schedule events found.")
    free = busy_to_free(
        events, week_start, day_start=day_start, day_end=day_end, weeks=weeks, tz=tz
    )
    return set_free_intervals(conn, user_id, free, source="import", raw_text=text)
