from __future__ import annotations

import sqlite3


def up(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS schedules (
            user_id TEXT PRIMARY KEY,
            source TEXT NOT NULL DEFAULT 'manual' CHECK(source IN ('manual', 'import')),
            raw_text TEXT NOT NULL DEFAULT '',
            updated_at TEXT NOT NULL DEFAULT (datetime('now'))
        );
        CREATE TABLE IF NOT EXISTS free_intervals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL REFERENCES schedules(user_id) ON DELETE CASCADE,
            start_utc TEXT NOT NULL,
            end_utc TEXT NOT NULL,
            UNIQUE(user_id, start_utc)
        );
        CREATE INDEX IF NOT EXISTS idx_free_intervals_user ON free_intervals(user_id, start_utc);
        """
    )
    conn.commit()


def down(conn: sqlite3.Connection) -> None:
    conn.executescript("DROP TABLE IF EXISTS free_intervals; DROP TABLE IF EXISTS schedules;")
    conn.commit()
