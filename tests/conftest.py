from __future__ import annotations

import os
import sqlite3
from collections.abc import Callable, Generator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from huddle.db.sqlite_client import get_connection, init_schema
from huddle.engine.intervals import TimeInterval


@pytest.fixture
def sqlite_db(tmp_path: Path) -> Generator[sqlite3.Connection, None, None]:
    os.environ.pop("DATABASE_URL", None)
    db_path = str(tmp_path / "test.db")
    conn = get_connection(db_path)
    init_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def at() -> Callable[..., datetime]:
    """Build a UTC datetime on 2026-03-10 (a Tuesday) unless another day is given."""

    def _at(hour: int, minute: int = 0, day: int = 10) -> datetime:
        return datetime(2026, 3, day, hour, minute, tzinfo=UTC)

    return _at


@pytest.fixture
def span(at: Callable[..., datetime]) -> Callable[..., TimeInterval]:
    """Build a same-day interval from (hour, minute) pairs or plain hours."""

    def _span(start: int | tuple[int, int], end: int | tuple[int, int], day: int = 10) -> TimeInterval:
        start_hm = start if isinstance(start, tuple) else (start, 0)
        end_hm = end if isinstance(end, tuple) else (end, 0)
        return TimeInterval(at(*start_hm, day=day), at(*end_hm, day=day))

    return _span
