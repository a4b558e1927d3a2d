from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

_BACKEND_DIR = Path(__file__).resolve().parents[1]
_BACKEND_ENV_PATH = _BACKEND_DIR / ".env"
_DOTENV_LOADED = False


def ensure_backend_env_loaded() -> None:
    global _DOTENV_LOADED
    if _DOTENV_LOADED:
        return
    load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=False)
    _DOTENV_LOADED = True


def _to_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    text = value.strip()
    if not text:
        return default
    try:
        return int(text)
    except ValueError:
        return default


def _to_str(value: str | None, default: str) -> str:
    return (value or "").strip() or default


def validate_timezone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"TIMEZONE is not a valid IANA timezone: {tz_name!r}") from exc


@dataclass(frozen=True)
class Settings:
    timezone: str = "UTC"
    db_connection_string: str = ""
    db_driver: str = "SQLite3 ODBC Driver"
    db_path: str = str(_BACKEND_DIR / "gym.db")
    db_timeout: int = 8
    min_visit_minutes: int = 20
    dedup_window_hours: int = 3
    auto_close_minutes: int = 240
    recompute_days: int = 7
    streak_lookback_days: int = 0
    summary_cache_seconds: int = 300
    job_run_at: str = "00:30"
    strava_client_id: str = ""
    strava_client_secret: str = ""
    strava_timeout: int = 15
    log_level: str = "INFO"

    @property
    def tzinfo(self) -> ZoneInfo:
        return validate_timezone(self.timezone)


def load_settings() -> Settings:
    ensure_backend_env_loaded()
    defaults = Settings()
    loaded = Settings(
        timezone=_to_str(os.getenv("TIMEZONE"), defaults.timezone),
        db_connection_string=(os.getenv("DB_CONNECTION_STRING") or "").strip(),
        db_driver=_to_str(os.getenv("DB_DRIVER"), defaults.db_driver),
        db_path=_to_str(os.getenv("DB_PATH"), defaults.db_path),
        db_timeout=_to_int(os.getenv("DB_TIMEOUT"), defaults.db_timeout),
        min_visit_minutes=_to_int(os.getenv("MIN_VISIT_MINUTES"), defaults.min_visit_minutes),
        dedup_window_hours=_to_int(os.getenv("DEDUP_WINDOW_HOURS"), defaults.dedup_window_hours),
        auto_close_minutes=_to_int(os.getenv("AUTO_CLOSE_MINUTES"), defaults.auto_close_minutes),
        recompute_days=_to_int(os.getenv("RECOMPUTE_DAYS"), defaults.recompute_days),
        streak_lookback_days=_to_int(
            os.getenv("STREAK_LOOKBACK_DAYS"), defaults.streak_lookback_days
        ),
        summary_cache_seconds=_to_int(
            os.getenv("SUMMARY_CACHE_SECONDS"), defaults.summary_cache_seconds
        ),
        job_run_at=_to_str(os.getenv("JOB_RUN_AT"), defaults.job_run_at),
        strava_client_id=(os.getenv("STRAVA_CLIENT_ID") or "").strip(),
        strava_client_secret=os.getenv("STRAVA_CLIENT_SECRET") or "",
        strava_timeout=_to_int(os.getenv("STRAVA_TIMEOUT"), defaults.strava_timeout),
        log_level=_to_str(os.getenv("LOG_LEVEL"), defaults.log_level).upper(),
    )
    validate_timezone(loaded.timezone)
    return loaded


settings = load_settings()
