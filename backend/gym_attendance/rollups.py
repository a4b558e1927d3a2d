from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Sequence

from fastapi import HTTPException, status

from .db import DictCursor
from .timeutils import (
    day_of_week,
    format_utc,
    is_workday,
    iter_dates,
    parse_iso_date,
    today_local,
    utcnow,
)

logger = logging.getLogger(__name__)

STATUS_VISIT = "visit"
STATUS_MISS = "miss"
STATUS_FUTURE = "future"
STATUS_EXCLUDED = "excluded"
DAY_STATUSES = (STATUS_VISIT, STATUS_MISS, STATUS_FUTURE, STATUS_EXCLUDED)
MANUAL_STATUSES = (STATUS_VISIT, STATUS_MISS)

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _fetch_manual_status(cursor: DictCursor, day: date) -> str | None:
    cursor.execute("SELECT status FROM manual_entries WHERE entry_date = ?", (day.isoformat(),))
    row = cursor.fetchone()
    return str(row["status"]) if row else None


def compute_day_status(cursor: DictCursor, day: date, today: date) -> dict[str, Any]:
    """Derive one date's status from closed visits and any manual override.

    Weekends are always ``excluded`` and dates after ``today`` always
    ``future``; neither is affected by visits or manual entries.
    """

    if not is_workday(day):
        return {"status": STATUS_EXCLUDED, "qualified_visits": 0, "total_minutes": 0, "is_manual": False}

    if day > today:
        return {"status": STATUS_FUTURE, "qualified_visits": 0, "total_minutes": 0, "is_manual": False}

    cursor.execute(
        """
        SELECT is_qualified, duration_minutes
        FROM visits
        WHERE visit_date = ?
          AND exit_time IS NOT NULL
        """,
        (day.isoformat(),),
    )
    rows = cursor.fetchall()
    qualified_visits = sum(1 for row in rows if int(row["is_qualified"] or 0) == 1)
    total_minutes = sum(int(row["duration_minutes"] or 0) for row in rows)

    manual_status = _fetch_manual_status(cursor, day)
    if manual_status is not None:
        day_status = manual_status
    else:
        day_status = STATUS_VISIT if qualified_visits > 0 else STATUS_MISS

    return {
        "status": day_status,
        "qualified_visits": qualified_visits,
        "total_minutes": total_minutes,
        "is_manual": manual_status is not None,
    }


def compute_rollup_for_date(cursor: DictCursor, day: date, today: date) -> dict[str, Any]:
    computed = compute_day_status(cursor, day, today)
    row = {
        "roll_date": day.isoformat(),
        "day_of_week": day_of_week(day),
        "is_workday": 1 if is_workday(day) else 0,
        "status": computed["status"],
        "qualified_visits": computed["qualified_visits"],
        "total_minutes": computed["total_minutes"],
        "is_manual": 1 if computed["is_manual"] else 0,
    }
    cursor.execute(
        """
        INSERT INTO daily_rollups
            (roll_date, day_of_week, is_workday, status, qualified_visits, total_minutes, is_manual)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (roll_date) DO UPDATE SET
            day_of_week = excluded.day_of_week,
            is_workday = excluded.is_workday,
            status = excluded.status,
            qualified_visits = excluded.qualified_visits,
            total_minutes = excluded.total_minutes,
            is_manual = excluded.is_manual
        """,
        (
            row["roll_date"],
            row["day_of_week"],
            row["is_workday"],
            row["status"],
            row["qualified_visits"],
            row["total_minutes"],
            row["is_manual"],
        ),
    )
    return row


def compute_rollups_for_range(
    cursor: DictCursor,
    start: date,
    end: date,
    today: date | None = None,
) -> int:
    resolved_today = today or today_local()
    count = 0
    for day in iter_dates(start, end):
        compute_rollup_for_date(cursor, day, resolved_today)
        count += 1
    return count


def ensure_rollups_exist(
    cursor: DictCursor,
    start: date,
    end: date,
    today: date | None = None,
) -> int:
    """Materialize missing rollups in ``[start, min(end, today)]``.

    Existing rows are left alone; future dates are never written.
    """

    resolved_today = today or today_local()
    bounded_end = min(end, resolved_today)
    if bounded_end < start:
        return 0

    cursor.execute(
        "SELECT roll_date FROM daily_rollups WHERE roll_date >= ? AND roll_date <= ?",
        (start.isoformat(), bounded_end.isoformat()),
    )
    existing = {str(row["roll_date"]) for row in cursor.fetchall()}

    created = 0
    for day in iter_dates(start, bounded_end):
        if day.isoformat() in existing:
            continue
        compute_rollup_for_date(cursor, day, resolved_today)
        created += 1
    if created:
        logger.info("Backfilled %s rollups between %s and %s", created, start, bounded_end)
    return created


def _serialize_rollup(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "date": str(row["roll_date"]),
        "dayOfWeek": int(row["day_of_week"]),
        "isWorkday": int(row["is_workday"]) == 1,
        "status": str(row["status"]),
        "qualifiedVisits": int(row["qualified_visits"] or 0),
        "totalMinutes": int(row["total_minutes"] or 0),
        "isManual": int(row.get("is_manual") or 0) == 1,
    }


def get_rollups_for_range(cursor: DictCursor, start: date, end: date) -> List[Dict[str, Any]]:
    cursor.execute(
        """
        SELECT roll_date, day_of_week, is_workday, status, qualified_visits, total_minutes, is_manual
        FROM daily_rollups
        WHERE roll_date >= ? AND roll_date <= ?
        ORDER BY roll_date ASC
        """,
        (start.isoformat(), end.isoformat()),
    )
    return [_serialize_rollup(row) for row in cursor.fetchall()]


def _parse_manual_entries(entries: Any) -> list[tuple[date, str]]:
    if not isinstance(entries, list):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid request: entries array required",
        )

    parsed: list[tuple[date, str]] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Each entry must be an object with date and status",
            )
        date_value = str(entry.get("date") or "")
        if not _DATE_PATTERN.match(date_value):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid date format: {date_value}. Expected YYYY-MM-DD",
            )
        try:
            day = parse_iso_date(date_value)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid date: {date_value}",
            ) from exc

        status_value = entry.get("status")
        if status_value not in MANUAL_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status: {status_value}. Expected 'visit' or 'miss'",
            )
        parsed.append((day, str(status_value)))
    return parsed


def set_manual_entries(
    cursor: DictCursor,
    entries: Sequence[Any],
    today: date | None = None,
    now: datetime | None = None,
) -> list[dict[str, str]]:
    """Validate the whole batch, then store overrides and refresh their rollups."""

    parsed = _parse_manual_entries(entries)
    resolved_today = today or today_local(now)
    updated_at = format_utc(now or utcnow())

    for day, manual_status in parsed:
        cursor.execute(
            """
            INSERT INTO manual_entries (entry_date, status, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT (entry_date) DO UPDATE SET
                status = excluded.status,
                updated_at = excluded.updated_at
            """,
            (day.isoformat(), manual_status, updated_at),
        )
        if day <= resolved_today:
            compute_rollup_for_date(cursor, day, resolved_today)
        logger.info("Manual entry %s set to %s", day, manual_status)

    return [{"date": day.isoformat(), "status": manual_status} for day, manual_status in parsed]
