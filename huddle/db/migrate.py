from __future__ import annotations

import argparse
import importlib
import logging
import pkgutil
from pathlib import Path

from huddle.db.sqlite_client import get_connection

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"


def _is_postgres(conn: object) -> bool:
    return conn.__class__.__module__.startswith("psycopg")


def ensure_migrations_table(conn: object) -> None:
    if _is_postgres(conn):
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS _migrations (
                id BIGSERIAL PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    else:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS _migrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                applied_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """
        )
    conn.commit()


def applied_migration_names(conn: object) -> set[str]:
    cur = conn.cursor() if _is_postgres(conn) else conn
    rows = cur.execute("SELECT name FROM _migrations").fetchall()
    return {row[0] for row in rows}


def discover_migrations(migrations_dir: Path = MIGRATIONS_DIR) -> list[str]:
    modules = [
        name for _, name, _ in pkgutil.iter_modules([str(migrations_dir)]) if name[0:3].isdigit()
    ]
    return sorted(modules)


def apply_all(db_path: str) -> list[str]:
    conn = get_connection(db_path)
    applied: list[str] = []
    try:
        ensure_migrations_table(conn)
        already = applied_migration_names(conn)
        for module_name in discover_migrations():
            if module_name in already:
                continue
            mod = importlib.import_module(f"migrations.{module_name}")
            mod.up(conn)
            cur = conn.cursor() if _is_postgres(conn) else conn
            if _is_postgres(conn):
                cur.execute("INSERT INTO _migrations(name) VALUES (%s)", (module_name,))
            else:
                cur.execute("INSERT INTO _migrations(name) VALUES (?)", (module_name,))
            conn.commit()
            applied.append(module_name)
            logger.info("[MIGRATE] applied=%s", module_name)
    finally:
        conn.close()
    return applied


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--db-path", default="data/huddle.db")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    apply_all(args.db_path)


if __name__ == "__main__":
    main()
