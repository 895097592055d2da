from __future__ import annotations

import json
import os
import sqlite3
import uuid
from pathlib import Path
from typing import Any

SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS groups (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_by TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'forming'
        CHECK(state IN ('forming', 'polling', 'confirmed', 'stale')),
    poll_cycle INTEGER NOT NULL DEFAULT 0,
    poll_window_start TEXT,
    poll_window_end TEXT,
    min_duration_minutes INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS group_members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
    member_id TEXT NOT NULL,
    joined_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(group_id, member_id)
);

CREATE INDEX IF NOT EXISTS idx_group_members_member ON group_members(member_id);

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

CREATE TABLE IF NOT EXISTS committed_slots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
    poll_cycle INTEGER NOT NULL,
    start_utc TEXT NOT NULL,
    end_utc TEXT NOT NULL,
    member_ids_json TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'stale', 'superseded')),
    confirmed_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(group_id, poll_cycle)
);

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

CREATE TABLE IF NOT EXISTS group_drafts (
    owner_id TEXT PRIMARY KEY,
    group_name TEXT NOT NULL DEFAULT '',
    selected_member_ids_json TEXT NOT NULL DEFAULT '[]',
    step TEXT NOT NULL DEFAULT 'details' CHECK(step IN ('details', 'members', 'review')),
    version INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

POSTGRES_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS groups (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        created_by TEXT NOT NULL,
        state TEXT NOT NULL DEFAULT 'forming'
            CHECK(state IN ('forming', 'polling', 'confirmed', 'stale')),
        poll_cycle INTEGER NOT NULL DEFAULT 0,
        poll_window_start TEXT,
        poll_window_end TEXT,
        min_duration_minutes INTEGER,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_members (
        id BIGSERIAL PRIMARY KEY,
        group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
        member_id TEXT NOT NULL,
        joined_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(group_id, member_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_group_members_member ON group_members(member_id)",
    """
    CREATE TABLE IF NOT EXISTS schedules (
        user_id TEXT PRIMARY KEY,
        source TEXT NOT NULL DEFAULT 'manual' CHECK(source IN ('manual', 'import')),
        raw_text TEXT NOT NULL DEFAULT '',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS free_intervals (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES schedules(user_id) ON DELETE CASCADE,
        start_utc TEXT NOT NULL,
        end_utc TEXT NOT NULL,
        UNIQUE(user_id, start_utc)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_free_intervals_user ON free_intervals(user_id, start_utc)",
    """
    CREATE TABLE IF NOT EXISTS committed_slots (
        id BIGSERIAL PRIMARY KEY,
        group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
        poll_cycle INTEGER NOT NULL,
        start_utc TEXT NOT NULL,
        end_utc TEXT NOT NULL,
        member_ids_json TEXT NOT NULL DEFAULT '[]',
        status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'stale', 'superseded')),
        confirmed_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(group_id, poll_cycle)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS slot_votes (
        id BIGSERIAL PRIMARY KEY,
        group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
        poll_cycle INTEGER NOT NULL,
        member_id TEXT NOT NULL,
        start_utc TEXT NOT NULL,
        end_utc TEXT NOT NULL,
        preferred INTEGER NOT NULL CHECK(preferred IN (0,1)),
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(group_id, poll_cycle, member_id, start_utc, end_utc)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_slot_votes_group ON slot_votes(group_id, poll_cycle)",
    """
    CREATE TABLE IF NOT EXISTS group_drafts (
        owner_id TEXT PRIMARY KEY,
        group_name TEXT NOT NULL DEFAULT '',
        selected_member_ids_json TEXT NOT NULL DEFAULT '[]',
        step TEXT NOT NULL DEFAULT 'details' CHECK(step IN ('details', 'members', 'review')),
        version INTEGER NOT NULL DEFAULT 1,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
]


def _is_postgres(conn: Any) -> bool:
    return conn.__class__.__module__.startswith("psycopg")


def _now_expr(conn: Any) -> str:
    return "CURRENT_TIMESTAMP" if _is_postgres(conn) else "datetime('now')"


def _adapt_sql(conn: Any, sql: str) -> str:
    return sql.replace("?", "%s") if _is_postgres(conn) else sql


def _execute(conn: Any, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> Any:
    if _is_postgres(conn):
        cur = conn.cursor()
        cur.execute(_adapt_sql(conn, sql), tuple(params))
        return cur
    return conn.execute(_adapt_sql(conn, sql), tuple(params))


def _executemany(conn: Any, sql: str, params_seq: list[tuple[Any, ...]]) -> Any:
    if _is_postgres(conn):
        cur = conn.cursor()
        cur.executemany(_adapt_sql(conn, sql), params_seq)
        return cur
    return conn.executemany(_adapt_sql(conn, sql), params_seq)


def _to_dict(row: Any) -> dict[str, Any]:
    return row if isinstance(row, dict) else dict(row)


def get_connection(db_path: str) -> Any:
    database_url = os.getenv("DATABASE_URL", "").strip()
    if database_url:
        from psycopg import connect
        from psycopg.rows import dict_row

        return connect(database_url, row_factory=dict_row, autocommit=False)

    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_schema(conn: Any) -> None:
    if _is_postgres(conn):
        cur = conn.cursor()
        for statement in POSTGRES_SCHEMA_STATEMENTS:
            cur.execute(statement)
    else:
        conn.executescript(SQLITE_SCHEMA)
    conn.commit()


# Groups and membership


def create_group(conn: Any, name: str, created_by: str) -> str:
    group_id = str(uuid.uuid4())
    _execute(
        conn,
        "INSERT INTO groups (id, name, created_by) VALUES (?, ?, ?)",
        [group_id, name, created_by],
    )
    _execute(
        conn,
        "INSERT INTO group_members (group_id, member_id) VALUES (?, ?)",
        [group_id, created_by],
    )
    conn.commit()
    return group_id


def get_group(conn: Any, group_id: str) -> dict[str, Any] | None:
    row = _execute(conn, "SELECT * FROM groups WHERE id = ?", [group_id]).fetchone()
    return _to_dict(row) if row else None


def delete_group(conn: Any, group_id: str) -> bool:
    cur = _execute(conn, "DELETE FROM groups WHERE id = ?", [group_id])
    conn.commit()
    return cur.rowcount > 0


def add_group_member(conn: Any, group_id: str, member_id: str) -> bool:
    row = _execute(
        conn,
        "SELECT id FROM group_members WHERE group_id = ? AND member_id = ?",
        [group_id, member_id],
    ).fetchone()
    if row:
        return False
    _execute(
        conn,
        "INSERT INTO group_members (group_id, member_id) VALUES (?, ?)",
        [group_id, member_id],
    )
    conn.commit()
    return True


def remove_group_member(conn: Any, group_id: str, member_id: str) -> bool:
    cur = _execute(
        conn,
        "DELETE FROM group_members WHERE group_id = ? AND member_id = ?",
        [group_id, member_id],
    )
    conn.commit()
    return cur.rowcount > 0


def get_group_members(conn: Any, group_id: str) -> list[dict[str, Any]]:
    rows = _execute(
        conn,
        "SELECT * FROM group_members WHERE group_id = ? ORDER BY joined_at ASC, id ASC",
        [group_id],
    ).fetchall()
    return [_to_dict(row) for row in rows]


def get_group_member_ids(conn: Any, group_id: str) -> set[str]:
    return {str(row["member_id"]) for row in get_group_members(conn, group_id)}


def get_groups_for_member(conn: Any, member_id: str) -> list[dict[str, Any]]:
    rows = _execute(
        conn,
        """
        SELECT g.*
        FROM group_members m
        JOIN groups g ON g.id = m.group_id
        WHERE m.member_id = ?
        ORDER BY g.created_at ASC, g.id ASC
        """,
        [member_id],
    ).fetchall()
    return [_to_dict(row) for row in rows]


def transition_group_state(
    conn: Any,
    group_id: str,
    from_states: tuple[str, ...],
    to_state: str,
    poll_cycle: int | None = None,
    bump_cycle: bool = False,
    commit: bool = True,
) -> bool:
    """Conditionally move a group between states; returns False if another writer got there first."""
    now_sql = _now_expr(conn)
    placeholders = ", ".join("?" for _ in from_states)
    sql = (
        f"UPDATE groups SET state = ?, updated_at = {now_sql}"
        f"{', poll_cycle = poll_cycle + 1' if bump_cycle else ''}"
        f" WHERE id = ? AND state IN ({placeholders})"
    )
    params: list[Any] = [str(to_state), group_id, *(str(state) for state in from_states)]
    if poll_cycle is not None:
        sql += " AND poll_cycle = ?"
        params.append(poll_cycle)
    cur = _execute(conn, sql, params)
    if commit:
        conn.commit()
    return cur.rowcount > 0


def set_poll_window(
    conn: Any,
    group_id: str,
    window_start: str,
    window_end: str,
    min_duration_minutes: int,
) -> None:
    _execute(
        conn,
        """
        UPDATE groups
        SET poll_window_start = ?, poll_window_end = ?, min_duration_minutes = ?
        WHERE id = ?
        """,
        [window_start, window_end, min_duration_minutes, group_id],
    )
    conn.commit()


# Schedules


def has_schedule(conn: Any, user_id: str) -> bool:
    row = _execute(conn, "SELECT user_id FROM schedules WHERE user_id = ?", [user_id]).fetchone()
    return row is not None


def get_schedule(conn: Any, user_id: str) -> dict[str, Any] | None:
    row = _execute(conn, "SELECT * FROM schedules WHERE user_id = ?", [user_id]).fetchone()
    return _to_dict(row) if row else None


def replace_free_intervals(
    conn: Any,
    user_id: str,
    rows: list[tuple[str, str]],
    source: str = "manual",
    raw_text: str = "",
) -> None:
    now_sql = _now_expr(conn)
    _execute(
        conn,
        f"""
        INSERT INTO schedules (user_id, source, raw_text, updated_at)
        VALUES (?, ?, ?, {now_sql})
        ON CONFLICT(user_id) DO UPDATE SET
            source = excluded.source,
            raw_text = excluded.raw_text,
            updated_at = {now_sql}
        """,
        [user_id, source, raw_text],
    )
    _execute(conn, "DELETE FROM free_intervals WHERE user_id = ?", [user_id])
    if rows:
        _executemany(
            conn,
            "INSERT INTO free_intervals (user_id, start_utc, end_utc) VALUES (?, ?, ?)",
            [(user_id, start, end) for start, end in rows],
        )
    conn.commit()


def get_free_interval_rows(
    conn: Any,
    user_id: str,
    range_start: str | None = None,
    range_end: str | None = None,
) -> list[dict[str, Any]]:
    sql = "SELECT start_utc, end_utc FROM free_intervals WHERE user_id = ?"
    params: list[Any] = [user_id]
    if range_start is not None:
        sql += " AND end_utc > ?"
        params.append(range_start)
    if range_end is not None:
        sql += " AND start_utc < ?"
        params.append(range_end)
    sql += " ORDER BY start_utc ASC"
    return [_to_dict(row) for row in _execute(conn, sql, params).fetchall()]


def delete_schedule(conn: Any, user_id: str) -> bool:
    _execute(conn, "DELETE FROM free_intervals WHERE user_id = ?", [user_id])
    cur = _execute(conn, "DELETE FROM schedules WHERE user_id = ?", [user_id])
    conn.commit()
    return cur.rowcount > 0


# Committed slots


def insert_committed_slot(
    conn: Any,
    group_id: str,
    poll_cycle: int,
    start_utc: str,
    end_utc: str,
    member_ids: list[str],
    commit: bool = True,
) -> None:
    _execute(
        conn,
        """
        INSERT INTO committed_slots (group_id, poll_cycle, start_utc, end_utc, member_ids_json)
        VALUES (?, ?, ?, ?, ?)
        """,
        [group_id, poll_cycle, start_utc, end_utc, json.dumps(sorted(member_ids))],
    )
    if commit:
        conn.commit()


def get_latest_committed_slot(conn: Any, group_id: str) -> dict[str, Any] | None:
    row = _execute(
        conn,
        """
        SELECT * FROM committed_slots
        WHERE group_id = ? AND status IN ('active', 'stale')
        ORDER BY poll_cycle DESC
        LIMIT 1
        """,
        [group_id],
    ).fetchone()
    return _to_dict(row) if row else None


def get_committed_slot_row(conn: Any, group_id: str, poll_cycle: int) -> dict[str, Any]:
    row = _execute(
        conn,
        "SELECT * FROM committed_slots WHERE group_id = ? AND poll_cycle = ?",
        [group_id, poll_cycle],
    ).fetchone()
    return _to_dict(row)


def update_committed_slot_status(
    conn: Any,
    group_id: str,
    poll_cycle: int,
    status: str,
    commit: bool = True,
) -> bool:
    cur = _execute(
        conn,
        "UPDATE committed_slots SET status = ? WHERE group_id = ? AND poll_cycle = ?",
        [status, group_id, poll_cycle],
    )
    if commit:
        conn.commit()
    return cur.rowcount > 0


def get_active_commitments_for_member(conn: Any, member_id: str) -> list[dict[str, Any]]:
    """Active committed slots of confirmed groups the member belongs to."""
    rows = _execute(
        conn,
        """
        SELECT c.*
        FROM committed_slots c
        JOIN groups g ON g.id = c.group_id AND g.poll_cycle = c.poll_cycle
        JOIN group_members m ON m.group_id = g.id
        WHERE m.member_id = ? AND g.state = 'confirmed' AND c.status = 'active'
        """,
        [member_id],
    ).fetchall()
    return [_to_dict(row) for row in rows]


# Slot votes


def upsert_slot_vote(
    conn: Any,
    group_id: str,
    poll_cycle: int,
    member_id: str,
    start_utc: str,
    end_utc: str,
    preferred: bool,
) -> None:
    now_sql = _now_expr(conn)
    _execute(
        conn,
        f"""
        INSERT INTO slot_votes (group_id, poll_cycle, member_id, start_utc, end_utc, preferred)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(group_id, poll_cycle, member_id, start_utc, end_utc)
        DO UPDATE SET preferred = excluded.preferred, created_at = {now_sql}
        """,
        [group_id, poll_cycle, member_id, start_utc, end_utc, 1 if preferred else 0],
    )
    conn.commit()


def get_slot_vote_rows(
    conn: Any,
    group_id: str,
    poll_cycle: int,
    member_id: str | None = None,
) -> list[dict[str, Any]]:
    sql = "SELECT * FROM slot_votes WHERE group_id = ? AND poll_cycle = ?"
    params: list[Any] = [group_id, poll_cycle]
    if member_id is not None:
        sql += " AND member_id = ?"
        params.append(member_id)
    sql += " ORDER BY start_utc ASC, member_id ASC"
    return [_to_dict(row) for row in _execute(conn, sql, params).fetchall()]


# Group drafts


def get_draft_row(conn: Any, owner_id: str) -> dict[str, Any] | None:
    row = _execute(conn, "SELECT * FROM group_drafts WHERE owner_id = ?", [owner_id]).fetchone()
    return _to_dict(row) if row else None


def insert_draft_row(
    conn: Any,
    owner_id: str,
    group_name: str,
    selected_member_ids: list[str],
    step: str,
) -> bool:
    cur = _execute(
        conn,
        """
        INSERT INTO group_drafts (owner_id, group_name, selected_member_ids_json, step, version)
        VALUES (?, ?, ?, ?, 1)
        ON CONFLICT(owner_id) DO NOTHING
        """,
        [owner_id, group_name, json.dumps(selected_member_ids), step],
    )
    conn.commit()
    return cur.rowcount > 0


def update_draft_row(
    conn: Any,
    owner_id: str,
    group_name: str,
    selected_member_ids: list[str],
    step: str,
    expected_version: int,
) -> bool:
    now_sql = _now_expr(conn)
    cur = _execute(
        conn,
        f"""
        UPDATE group_drafts
        SET group_name = ?, selected_member_ids_json = ?, step = ?,
            version = version + 1, updated_at = {now_sql}
        WHERE owner_id = ? AND version = ?
        """,
        [group_name, json.dumps(selected_member_ids), step, owner_id, expected_version],
    )
    conn.commit()
    return cur.rowcount > 0


def delete_draft_row(conn: Any, owner_id: str) -> bool:
    cur = _execute(conn, "DELETE FROM group_drafts WHERE owner_id = ?", [owner_id])
    conn.commit()
    return cur.rowcount > 0
