from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Iterable

from .config import settings
from .db import DictCursor
from .rollups import STATUS_MISS, STATUS_VISIT


def calculate_streaks(statuses_newest_first: Iterable[str]) -> dict[str, int]:
    """Current and longest runs of ``visit`` days.

    Input is workday statuses ordered from the most recent date backward;
    ``future`` rows should already be filtered out.
    """

    current_streak = 0
    longest_streak = 0
    running = 0
    counting_current = True

    for day_status in statuses_newest_first:
        if day_status == STATUS_VISIT:
            running += 1
            if counting_current:
                current_streak = running
        elif day_status == STATUS_MISS:
            longest_streak = max(longest_streak, running)
            running = 0
            counting_current = False

    longest_streak = max(longest_streak, running)
    return {"currentStreak": current_streak, "longestStreak": longest_streak}


def fetch_streaks(cursor: DictCursor, today: date, lookback_days: int | None = None) -> dict[str, int]:
    days = settings.streak_lookback_days if lookback_days is None else lookback_days
    sql = """
        SELECT roll_date, status
        FROM daily_rollups
        WHERE is_workday = 1
          AND status != 'future'
          AND roll_date <= ?
    """
    params: list[Any] = [today.isoformat()]
    if days > 0:
        sql += " AND roll_date >= ?"
        params.append((today - timedelta(days=days)).isoformat())
    sql += " ORDER BY roll_date DESC"

    cursor.execute(sql, params)
    return calculate_streaks(str(row["status"]) for row in cursor.fetchall())
