from __future__ import annotations

import sqlite3


def up(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS group_drafts (
            owner_id TEXT PRIMARY KEY,
            group_name TEXT NOT NULL DEFAULT '',
            selected_member_ids_json TEXT NOT NULL DEFAULT '[]',
            step TEXT NOT NULL DEFAULT 'details'
                CHECK(step IN ('details', 'members', 'review')),
            version INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL DEFAULT (datetime('now'))
        );
        """
    )
    conn.commit()


def down(conn: sqlite3.Connection) -> None:
    conn.executescript("DROP TABLE IF EXISTS group_drafts;")
    conn.commit()
