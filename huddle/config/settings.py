from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    database_url: str
    sqlite_db_path: str
    log_level: str
    base_url: str
    horizon_days: int
    default_window_days: int
    default_min_duration_minutes: int
    day_start_hour: int
    day_end_hour: int


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "").strip(),
        sqlite_db_path=os.getenv("SQLITE_DB_PATH", "data/huddle.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        base_url=os.getenv("BASE_URL", "http://localhost:8501"),
        horizon_days=_get_int_env("HORIZON_DAYS", 90),
        default_window_days=_get_int_env("DEFAULT_WINDOW_DAYS", 7),
        default_min_duration_minutes=_get_int_env("DEFAULT_MIN_DURATION_MINUTES", 30),
        day_start_hour=_get_int_env("DAY_START_HOUR", 8),
        day_end_hour=_get_int_env("DAY_END_HOUR", 22),
    )


def validate_settings(settings: Settings) -> list[str]:
    errors: list[str] = []
    if settings.horizon_days <= 0:
        errors.append("HORIZON_DAYS must be > 0")
    if settings.default_window_days <= 0:
        errors.append("DEFAULT_WINDOW_DAYS must be > 0")
    if settings.default_window_days > settings.horizon_days:
        errors.append("DEFAULT_WINDOW_DAYS must not exceed HORIZON_DAYS")
    if settings.default_min_duration_minutes <= 0:
        errors.append("DEFAULT_MIN_DURATION_MINUTES must be > 0")
    if not 0 <= settings.day_start_hour < settings.day_end_hour <= 24:
        errors.append("DAY_START_HOUR and DAY_END_HOUR must satisfy 0 <= start < end <= 24")
    if settings.log_level not in logging.getLevelNamesMapping():
        errors.append(f"LOG_LEVEL {settings.log_level!r} is not a logging level")
    if not settings.base_url:
        errors.append("BASE_URL is required")
    elif "://" not in settings.base_url:
        errors.append("BASE_URL must include scheme, e.g. http://")
    if settings.database_url and not settings.database_url.startswith(
        ("postgres://", "postgresql://")
    ):
        errors.append("DATABASE_URL must start with postgres:// or postgresql://")
    return errors


def ensure_runtime_dirs(settings: Settings) -> None:
    if not settings.database_url:
        Path(settings.sqlite_db_path).parent.mkdir(parents=True, exist_ok=True)


def configure_logging(settings: Settings) -> None:
    level = logging.getLevelNamesMapping().get(settings.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("huddle").setLevel(level)
