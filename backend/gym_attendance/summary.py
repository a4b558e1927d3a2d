from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict

from fastapi import HTTPException, status

from .cycling import get_cycling_weeks_for_range
from .db import DictCursor
from .heatmap import build_heatmap
from .rollups import STATUS_VISIT, ensure_rollups_exist, get_rollups_for_range
from .streaks import fetch_streaks
from .timeutils import format_utc, monday_of_week, parse_iso_date, today_local, utcnow

logger = logging.getLogger(__name__)

MIN_WEEKS = 12
MAX_WEEKS = 52
DEFAULT_WEEKS = 12
SUMMARY_MODES = ("weekly", "monthly")


def clamp_weeks(weeks: int | None) -> int:
    if weeks is None:
        return DEFAULT_WEEKS
    return min(MAX_WEEKS, max(MIN_WEEKS, weeks))


def _parse_start(start_value: str) -> date:
    try:
        return parse_iso_date(start_value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start must be in YYYY-MM-DD format",
        ) from exc


def resolve_window(today: date, start_value: str | None, weeks: int | None) -> tuple[date, int]:
    """Pick the first heatmap Monday and the number of week columns.

    An explicit start is snapped back to its Monday and runs to the end of
    the current year; otherwise the window ends with the current week.
    """

    if start_value:
        start = monday_of_week(_parse_start(start_value))
        end_of_year = date(today.year, 12, 31)
        span_days = (end_of_year - start).days
        return start, max(1, span_days // 7 + 1)

    week_count = clamp_weeks(weeks)
    return monday_of_week(today) - timedelta(days=7 * (week_count - 1)), week_count


def current_period_stats(cursor: DictCursor, mode: str, target: int, today: date) -> dict[str, Any]:
    if mode == "weekly":
        period_start = monday_of_week(today)
        label = "This Week"
    else:
        period_start = today.replace(day=1)
        label = "This Month"

    cursor.execute(
        """
        SELECT COUNT(*) AS visit_count
        FROM visits
        WHERE visit_date >= ? AND visit_date <= ?
          AND is_qualified = 1
        """,
        (period_start.isoformat(), today.isoformat()),
    )
    row = cursor.fetchone() or {}
    visits = int(row.get("visit_count") or 0)
    progress = int(visits * 100 / target + 0.5) if target > 0 else 0
    return {"label": label, "visits": visits, "target": target, "progressPercent": progress}


def build_summary(
    cursor: DictCursor,
    *,
    mode: str = "weekly",
    target: int = 4,
    start_value: str | None = None,
    weeks: int | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    if mode not in SUMMARY_MODES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="mode must be 'weekly' or 'monthly'",
        )

    generated_at = now or utcnow()
    today = today_local(generated_at)
    start, week_count = resolve_window(today, start_value, weeks)
    logger.debug("Summary window starts %s for %s weeks (mode=%s)", start, week_count, mode)

    ensure_rollups_exist(cursor, start, today, today=today)
    rollups = get_rollups_for_range(cursor, start, today)
    heatmap = build_heatmap(rollups, start, week_count)

    current_period = current_period_stats(cursor, mode, target, today)
    streaks = fetch_streaks(cursor, today)

    last_monday = start + timedelta(days=7 * (week_count - 1))
    cycling_weeks = get_cycling_weeks_for_range(cursor, start, last_monday)

    return {
        "currentPeriod": current_period,
        "heatmap": heatmap,
        "stats": {
            "totalVisits": sum(1 for item in rollups if item["status"] == STATUS_VISIT),
            "totalMinutes": sum(item["totalMinutes"] for item in rollups),
            "currentStreak": streaks["currentStreak"],
            "longestStreak": streaks["longestStreak"],
        },
        "cycling": {"weeks": cycling_weeks},
        "generatedAt": format_utc(generated_at),
    }
