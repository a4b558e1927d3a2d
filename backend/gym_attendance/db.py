from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Sequence

from .config import settings

logger = logging.getLogger(__name__)

_DB_TARGET_LOGGED = False

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_hash TEXT NOT NULL UNIQUE,
        timestamp TEXT NOT NULL,
        action TEXT NOT NULL CHECK (action IN ('enter', 'exit')),
        location_name TEXT NOT NULL,
        raw_payload TEXT,
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_events_location_time ON events (location_name, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS visits (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        location_name TEXT NOT NULL,
        enter_event_id INTEGER NOT NULL REFERENCES events (id),
        enter_time TEXT NOT NULL,
        visit_date TEXT NOT NULL,
        exit_event_id INTEGER REFERENCES events (id),
        exit_time TEXT,
        duration_minutes INTEGER,
        is_qualified INTEGER NOT NULL DEFAULT 0,
        auto_closed INTEGER NOT NULL DEFAULT 0
    )
    """,
    # One open visit per location, enforced by storage rather than by request ordering.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_visits_open_location
        ON visits (location_name) WHERE exit_time IS NULL
    """,
    "CREATE INDEX IF NOT EXISTS ix_visits_visit_date ON visits (visit_date)",
    "CREATE INDEX IF NOT EXISTS ix_visits_location_exit ON visits (location_name, exit_time)",
    """
    CREATE TABLE IF NOT EXISTS daily_rollups (
        roll_date TEXT PRIMARY KEY,
        day_of_week INTEGER NOT NULL,
        is_workday INTEGER NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('visit', 'miss', 'future', 'excluded')),
        qualified_visits INTEGER NOT NULL DEFAULT 0,
        total_minutes INTEGER NOT NULL DEFAULT 0,
        is_manual INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS manual_entries (
        entry_date TEXT PRIMARY KEY,
        status TEXT NOT NULL CHECK (status IN ('visit', 'miss')),
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cycling_weekly (
        week_start TEXT PRIMARY KEY,
        has_ride INTEGER NOT NULL DEFAULT 0,
        total_rides INTEGER NOT NULL DEFAULT 0,
        total_distance_meters REAL NOT NULL DEFAULT 0,
        total_moving_time_seconds INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS strava_tokens (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        access_token TEXT NOT NULL,
        refresh_token TEXT NOT NULL,
        expires_at INTEGER NOT NULL,
        athlete_id INTEGER,
        updated_at TEXT NOT NULL
    )
    """,
)


def validate_db_for_startup() -> None:
    if settings.db_connection_string:
        return
    if not settings.db_path.strip():
        raise RuntimeError("DB_PATH is empty; set DB_PATH or DB_CONNECTION_STRING in backend/.env")


def log_db_connection_target_once() -> None:
    global _DB_TARGET_LOGGED
    if _DB_TARGET_LOGGED:
        return
    if settings.db_connection_string:
        logger.info("DB: connecting with DB_CONNECTION_STRING")
    else:
        logger.info("DB: connecting to %s via %s", settings.db_path, settings.db_driver)
    _DB_TARGET_LOGGED = True


def _clean_driver(driver_value: str) -> str:
    return driver_value.strip().strip("{}")


def build_connection_string() -> str:
    if settings.db_connection_string:
        return settings.db_connection_string
    driver = _clean_driver(settings.db_driver)
    return f"DRIVER={{{driver}}};Database={settings.db_path};"


def _normalize_params(params: Any | None) -> tuple[Any, ...]:
    if params is None:
        return ()
    if isinstance(params, tuple):
        return params
    if isinstance(params, list):
        return tuple(params)
    if isinstance(params, dict):
        raise TypeError("Named parameters are not supported for this DB cursor.")
    if isinstance(params, (str, bytes)):
        return (params,)
    if isinstance(params, Iterable):
        return tuple(params)
    return (params,)


def _row_to_dict(description: Sequence[Any] | None, row: Any) -> dict[str, Any]:
    if row is None:
        return {}
    if isinstance(row, dict):
        return dict(row)

    columns = [str(column[0]) for column in (description or [])]
    if not columns:
        return {}
    return {columns[index]: row[index] for index in range(len(columns))}


def rows_to_dicts(cursor: Any, rows: Sequence[Any] | None = None) -> list[dict[str, Any]]:
    if rows is None:
        rows = cursor.fetchall()
    description = getattr(cursor, "description", None)
    return [_row_to_dict(description, row) for row in rows]


class DictCursor:
    """DB-API cursor wrapper returning rows as dicts.

    Works over pyodbc in production and over sqlite3 in tests; both accept
    a parameter sequence as the second argument to ``execute``.
    """

    def __init__(self, cursor: Any):
        self._cursor = cursor

    @property
    def description(self) -> Any:
        return self._cursor.description

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount

    def execute(self, sql: str, params: Any | None = None) -> "DictCursor":
        normalized_params = _normalize_params(params)
        if normalized_params:
            self._cursor.execute(sql, normalized_params)
        else:
            self._cursor.execute(sql)
        return self

    def executemany(self, sql: str, params_seq: Sequence[Sequence[Any]]) -> "DictCursor":
        self._cursor.executemany(sql, params_seq)
        return self

    def fetchone(self) -> dict[str, Any] | None:
        row = self._cursor.fetchone()
        if row is None:
            return None
        return _row_to_dict(self._cursor.description, row)

    def fetchall(self) -> list[dict[str, Any]]:
        return rows_to_dicts(self._cursor, self._cursor.fetchall())

    def close(self) -> None:
        self._cursor.close()

    def __iter__(self) -> Iterator[dict[str, Any]]:
        while True:
            row = self.fetchone()
            if row is None:
                break
            yield row

    def __getattr__(self, item: str) -> Any:
        return getattr(self._cursor, item)


def init_schema(cursor: DictCursor) -> None:
    for statement in SCHEMA_STATEMENTS:
        cursor.execute(statement)


@contextmanager
def get_connection() -> Iterator[Any]:
    # pyodbc links the system ODBC manager (libodbc) at import time.
    import pyodbc

    validate_db_for_startup()
    log_db_connection_target_once()
    conn = pyodbc.connect(build_connection_string(), timeout=settings.db_timeout)
    conn.autocommit = False
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def get_cursor() -> Iterator[DictCursor]:
    with get_connection() as connection:
        cursor = connection.cursor()
        wrapped = DictCursor(cursor)
        try:
            yield wrapped
        finally:
            wrapped.close()
