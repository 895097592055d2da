from __future__ import annotations

import sqlite3


def up(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS slot_votes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
            poll_cycle INTEGER NOT NULL,
            member_id TEXT NOT NULL,
            start_utc TEXT NOT NULL,
            end_utc TEXT NOT NULL,
            preferred INTEGER NOT NULL CHECK(preferred IN (0,1)),
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            UNIQUE(group_id, poll_cycle, member_id, start_utc, end_utc)
        );
        CREATE INDEX IF NOT EXISTS idx_slot_votes_group ON slot_votes(group_id, poll_cycle);
        """
    )
    conn.commit()


def down(conn: sqlite3.Connection) -> None:
    conn.executescript("DROP TABLE IF EXISTS slot_votes;")
    conn.commit()
