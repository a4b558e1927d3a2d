from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from gym_attendance.db import DictCursor


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def fetch_visits(cursor: DictCursor) -> list[dict[str, Any]]:
    cursor.execute("SELECT * FROM visits ORDER BY id")
    return cursor.fetchall()


def fetch_rollup(cursor: DictCursor, day: str) -> dict[str, Any] | None:
    cursor.execute("SELECT * FROM daily_rollups WHERE roll_date = ?", (day,))
    return cursor.fetchone()
