from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, ContextManager, Dict

from .config import settings
from .cycling import sync_cycling_weekly
from .db import DictCursor, get_cursor
from .rollups import compute_rollups_for_range
from .sessionizer import reap_stale_visits
from .timeutils import today_local, utcnow

logger = logging.getLogger(__name__)

CursorFactory = Callable[[], ContextManager[DictCursor]]


def refresh_attendance(cursor: DictCursor, now: datetime | None = None) -> Dict[str, Any]:
    """Reap stale visits, then recompute the trailing rollup window."""

    current = now or utcnow()
    today = today_local(current)

    closed_visits = reap_stale_visits(cursor, now=current)
    logger.info("Auto-closed %s stale visits", closed_visits)

    start = today - timedelta(days=settings.recompute_days)
    rollups_updated = compute_rollups_for_range(cursor, start, today, today=today)
    logger.info("Updated %s rollups for %s to %s", rollups_updated, start, today)

    return {"closedVisits": closed_visits, "rollupsUpdated": rollups_updated}


def _sync_cycling_safely(
    cursor_factory: CursorFactory,
    today: date,
    sync_cycling: Callable[..., int],
) -> int:
    # The failing unit rolls back on its own; attendance work is already committed.
    try:
        with cursor_factory() as cursor:
            return sync_cycling(cursor, today=today)
    except Exception:
        logger.exception("Cycling sync failed; continuing")
        return 0


def run_daily_rollup(
    cursor_factory: CursorFactory = get_cursor,
    now: datetime | None = None,
    sync_cycling: Callable[..., int] = sync_cycling_weekly,
) -> Dict[str, Any]:
    """Run the daily maintenance job.

    Reaping and the rollup recompute commit in one transaction before the
    cycling sync starts in a second one, so the Strava calls never hold the
    attendance write lock and a failed sync is non-fatal.
    """

    current = now or utcnow()
    logger.info("Starting daily rollup job for %s", today_local(current))

    with cursor_factory() as cursor:
        result = refresh_attendance(cursor, now=current)

    result["cyclingWeeksSynced"] = _sync_cycling_safely(cursor_factory, today_local(current), sync_cycling)
    return result
