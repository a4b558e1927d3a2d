"""Turns enter/exit events into visit sessions.

Each location's state is implicit in the ``visits`` table: the location is
OPEN while it has a row with a NULL ``exit_time`` and CLOSED otherwise. The
partial unique index on ``visits(location_name) WHERE exit_time IS NULL``
keeps a second concurrent enter from opening another session, and every
close is a conditional update on ``exit_time IS NULL`` so a genuine exit and
a reaper sweep cannot overwrite each other.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .config import settings
from .db import DictCursor
from .timeutils import format_utc, local_date, parse_utc, utcnow

logger = logging.getLogger(__name__)

VISIT_STARTED = "visit_started"
VISIT_CLOSED = "visit_closed"
VISIT_IGNORED = "visit_ignored"
NO_OPEN_VISIT = "no_open_visit"


@dataclass(frozen=True)
class SessionResult:
    action: str
    visit_id: int | None = None
    duration: int | None = None
    is_qualified: bool | None = None
    reason: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "action": self.action,
            "visitId": self.visit_id,
            "duration": self.duration,
            "isQualified": self.is_qualified,
            "reason": self.reason,
        }
        return {key: value for key, value in payload.items() if value is not None}


def duration_minutes(enter_time: datetime, exit_time: datetime) -> int:
    seconds = (exit_time - enter_time).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds / 60 + 0.5)


def _is_rapid_reentry(cursor: DictCursor, location_name: str, enter_time: datetime) -> bool:
    window_start = enter_time - timedelta(hours=settings.dedup_window_hours)
    cursor.execute(
        """
        SELECT id, exit_time
        FROM visits
        WHERE location_name = ?
          AND exit_time IS NOT NULL
          AND exit_time > ?
          AND exit_time <= ?
        ORDER BY exit_time DESC
        LIMIT 1
        """,
        (location_name, format_utc(window_start), format_utc(enter_time)),
    )
    return cursor.fetchone() is not None


def _fetch_open_visit(cursor: DictCursor, location_name: str) -> dict[str, Any] | None:
    cursor.execute(
        """
        SELECT id, enter_time, enter_event_id
        FROM visits
        WHERE location_name = ?
          AND exit_time IS NULL
        ORDER BY enter_time DESC
        LIMIT 1
        """,
        (location_name,),
    )
    return cursor.fetchone()


def _start_visit(
    cursor: DictCursor,
    *,
    event_id: int,
    location_name: str,
    enter_time: datetime,
    tz_name: str | None,
) -> SessionResult:
    if _fetch_open_visit(cursor, location_name) is not None:
        return SessionResult(action=VISIT_IGNORED, reason="Visit already in progress")

    if _is_rapid_reentry(cursor, location_name, enter_time):
        return SessionResult(
            action=VISIT_IGNORED,
            reason=f"Rapid re-entry within {settings.dedup_window_hours} hours",
        )

    visit_date = local_date(enter_time, tz_name).isoformat()
    cursor.execute(
        """
        INSERT INTO visits (location_name, enter_event_id, enter_time, visit_date)
        VALUES (?, ?, ?, ?)
        ON CONFLICT DO NOTHING
        RETURNING id
        """,
        (location_name, event_id, format_utc(enter_time), visit_date),
    )
    row = cursor.fetchone()
    if row is None:
        # A concurrent enter opened the visit between the check and the insert.
        return SessionResult(action=VISIT_IGNORED, reason="Visit already in progress")

    logger.info("Visit %s started at %s (%s)", row["id"], location_name, visit_date)
    return SessionResult(action=VISIT_STARTED, visit_id=int(row["id"]))


def _close_visit(
    cursor: DictCursor,
    *,
    event_id: int,
    location_name: str,
    exit_time: datetime,
) -> SessionResult:
    open_visit = _fetch_open_visit(cursor, location_name)
    if open_visit is None:
        return SessionResult(action=NO_OPEN_VISIT, reason="No open visit found to close")

    duration = duration_minutes(parse_utc(open_visit["enter_time"]), exit_time)
    qualified = duration >= settings.min_visit_minutes
    cursor.execute(
        """
        UPDATE visits
        SET exit_event_id = ?,
            exit_time = ?,
            duration_minutes = ?,
            is_qualified = ?
        WHERE id = ?
          AND exit_time IS NULL
        """,
        (event_id, format_utc(exit_time), duration, 1 if qualified else 0, open_visit["id"]),
    )
    if cursor.rowcount == 0:
        return SessionResult(action=NO_OPEN_VISIT, reason="Visit was closed concurrently")

    logger.info(
        "Visit %s closed at %s after %s min (qualified=%s)",
        open_visit["id"],
        location_name,
        duration,
        qualified,
    )
    return SessionResult(
        action=VISIT_CLOSED,
        visit_id=int(open_visit["id"]),
        duration=duration,
        is_qualified=qualified,
    )


def sessionize_event(
    cursor: DictCursor,
    *,
    event_id: int,
    timestamp: datetime,
    action: str,
    location_name: str,
    tz_name: str | None = None,
) -> SessionResult:
    """Apply one stored event to its location's session state."""

    if action == "enter":
        return _start_visit(
            cursor,
            event_id=event_id,
            location_name=location_name,
            enter_time=timestamp,
            tz_name=tz_name,
        )
    if action == "exit":
        return _close_visit(
            cursor,
            event_id=event_id,
            location_name=location_name,
            exit_time=timestamp,
        )
    raise ValueError(f"unknown action: {action!r}")


def reap_stale_visits(cursor: DictCursor, now: datetime | None = None) -> int:
    """Force-close visits left open longer than the auto-close threshold.

    The synthetic exit lands exactly ``auto_close_minutes`` after the enter.
    Returns the number of visits this sweep actually closed.
    """

    limit_minutes = settings.auto_close_minutes
    cutoff = (now or utcnow()) - timedelta(minutes=limit_minutes)
    cursor.execute(
        """
        SELECT id, enter_time
        FROM visits
        WHERE exit_time IS NULL
          AND enter_time < ?
        ORDER BY enter_time ASC
        """,
        (format_utc(cutoff),),
    )
    stale_visits = cursor.fetchall()

    qualified = limit_minutes >= settings.min_visit_minutes
    closed_count = 0
    for visit in stale_visits:
        exit_time = parse_utc(visit["enter_time"]) + timedelta(minutes=limit_minutes)
        cursor.execute(
            """
            UPDATE visits
            SET exit_time = ?,
                duration_minutes = ?,
                is_qualified = ?,
                auto_closed = 1
            WHERE id = ?
              AND exit_time IS NULL
            """,
            (format_utc(exit_time), limit_minutes, 1 if qualified else 0, visit["id"]),
        )
        if cursor.rowcount:
            closed_count += 1
            logger.info("Auto-closed visit %s at %s", visit["id"], format_utc(exit_time))

    return closed_count
