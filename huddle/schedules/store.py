from __future__ import annotations

from datetime import datetime
from typing import Any

from huddle.db.sqlite_client import get_free_interval_rows, has_schedule
from huddle.engine.errors import DataUnavailable
from huddle.engine.intervals import (
    TimeInterval,
    format_timestamp,
    normalize_intervals,
    parse_timestamp,
)


def rows_to_intervals(rows: list[dict[str, Any]]) -> list[TimeInterval]:
    return normalize_intervals(
        TimeInterval(parse_timestamp(row["start_utc"]), parse_timestamp(row["end_utc"]))
        for row in rows
    )


class SqliteScheduleStore:
    """Reads members' free time for the availability engine.

    Returns ``None`` for users who never entered a schedule so callers can
    tell "no data" apart from "no free time".
    """

    def __init__(self, conn: Any) -> None:
        self.conn = conn

    def get_free_intervals(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[TimeInterval] | None:
        try:
            if not has_schedule(self.conn, user_id):
                return None
            rows = get_free_interval_rows(
                self.conn, user_id, format_timestamp(start), format_timestamp(end)
            )
        except Exception as exc:
            raise DataUnavailable(user_id, str(exc)) from exc
        return rows_to_intervals(rows)
