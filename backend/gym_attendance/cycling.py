"""Weekly cycling overlay fed by the Strava API.

Everything here is best-effort: network or payload problems are logged and
surface as "no data", never as an error for the caller.
"""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any

import requests

from .config import settings
from .db import DictCursor
from .timeutils import format_utc, monday_of_week, parse_timestamp, today_local, utcnow

logger = logging.getLogger(__name__)

STRAVA_TOKEN_URL = "https://www.strava.com/api/v3/oauth/token"
STRAVA_ACTIVITIES_URL = "https://www.strava.com/api/v3/athlete/activities"
TOKEN_REFRESH_MARGIN_SECONDS = 300
ACTIVITIES_PER_PAGE = 100
RIDE_TYPES = {"Ride", "VirtualRide"}


def create_session() -> requests.Session:
    session = requests.Session()
    session.headers.update({"Accept": "application/json"})
    return session


def _has_client_credentials() -> bool:
    return bool(settings.strava_client_id and settings.strava_client_secret)


def _store_tokens(cursor: DictCursor, data: dict[str, Any]) -> None:
    athlete = data.get("athlete") or {}
    cursor.execute(
        """
        INSERT INTO strava_tokens (id, access_token, refresh_token, expires_at, athlete_id, updated_at)
        VALUES (1, ?, ?, ?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET
            access_token = excluded.access_token,
            refresh_token = excluded.refresh_token,
            expires_at = excluded.expires_at,
            athlete_id = COALESCE(excluded.athlete_id, strava_tokens.athlete_id),
            updated_at = excluded.updated_at
        """,
        (
            str(data["access_token"]),
            str(data["refresh_token"]),
            int(data["expires_at"]),
            athlete.get("id"),
            format_utc(utcnow()),
        ),
    )


def _post_token(session: requests.Session, body: dict[str, Any]) -> dict[str, Any] | None:
    try:
        response = session.post(STRAVA_TOKEN_URL, json=body, timeout=settings.strava_timeout)
    except requests.RequestException:
        logger.exception("Strava token request failed")
        return None
    if not response.ok:
        logger.warning("Strava token request failed: %s", response.status_code)
        return None
    try:
        data = response.json()
    except ValueError:
        logger.warning("Strava token response was not JSON")
        return None
    if not isinstance(data, dict) or not {"access_token", "refresh_token", "expires_at"} <= data.keys():
        logger.warning("Strava token response missing fields")
        return None
    return data


def exchange_authorization_code(
    cursor: DictCursor,
    code: str,
    session: requests.Session | None = None,
) -> int | None:
    """Trade an OAuth authorization code for tokens; returns the athlete id."""

    if not _has_client_credentials():
        logger.error("Strava client credentials not configured")
        return None

    data = _post_token(
        session or create_session(),
        {
            "client_id": settings.strava_client_id,
            "client_secret": settings.strava_client_secret,
            "code": code,
            "grant_type": "authorization_code",
        },
    )
    if data is None:
        return None
    _store_tokens(cursor, data)
    athlete_id = (data.get("athlete") or {}).get("id")
    logger.info("Strava connected for athlete %s", athlete_id)
    return athlete_id


def get_valid_access_token(
    cursor: DictCursor,
    session: requests.Session | None = None,
    now_epoch: int | None = None,
) -> str | None:
    cursor.execute(
        "SELECT access_token, refresh_token, expires_at FROM strava_tokens WHERE id = 1"
    )
    row = cursor.fetchone()
    if row is None:
        return None

    now_value = int(time.time()) if now_epoch is None else now_epoch
    if int(row["expires_at"]) > now_value + TOKEN_REFRESH_MARGIN_SECONDS:
        return str(row["access_token"])

    if not _has_client_credentials():
        logger.error("Strava client credentials not configured")
        return None

    data = _post_token(
        session or create_session(),
        {
            "client_id": settings.strava_client_id,
            "client_secret": settings.strava_client_secret,
            "grant_type": "refresh_token",
            "refresh_token": row["refresh_token"],
        },
    )
    if data is None:
        return None
    _store_tokens(cursor, data)
    return str(data["access_token"])


def fetch_recent_activities(
    cursor: DictCursor,
    after_epoch: int,
    session: requests.Session | None = None,
) -> list[dict[str, Any]] | None:
    """Fetch rides since ``after_epoch``; ``None`` when any part of the fetch failed."""

    http = session or create_session()
    token = get_valid_access_token(cursor, session=http)
    if not token:
        return None

    rides: list[dict[str, Any]] = []
    page = 1
    while True:
        try:
            response = http.get(
                STRAVA_ACTIVITIES_URL,
                params={"after": after_epoch, "per_page": ACTIVITIES_PER_PAGE, "page": page},
                headers={"Authorization": f"Bearer {token}"},
                timeout=settings.strava_timeout,
            )
        except requests.RequestException:
            logger.exception("Strava activities fetch failed on page %s", page)
            return None
        if not response.ok:
            logger.warning("Strava activities fetch failed: %s", response.status_code)
            return None
        try:
            batch = response.json()
        except ValueError:
            logger.warning("Strava activities response was not JSON")
            return None
        if not isinstance(batch, list):
            logger.warning("Strava activities response was not a list")
            return None
        if not batch:
            break

        rides.extend(item for item in batch if isinstance(item, dict) and item.get("type") in RIDE_TYPES)
        if len(batch) < ACTIVITIES_PER_PAGE:
            break
        page += 1

    return rides


def sync_cycling_weekly(
    cursor: DictCursor,
    weeks_back: int = 4,
    today: date | None = None,
    session: requests.Session | None = None,
) -> int:
    """Rebuild ``cycling_weekly`` rows for the last ``weeks_back`` weeks.

    Writes nothing and returns 0 when the Strava data could not be fetched.
    """

    weeks_back = max(1, weeks_back)
    start_monday = monday_of_week(today or today_local()) - timedelta(days=7 * (weeks_back - 1))
    after_epoch = int(datetime.combine(start_monday, datetime.min.time(), tzinfo=timezone.utc).timestamp())
    activities = fetch_recent_activities(cursor, after_epoch, session=session)
    if activities is None:
        logger.warning("Cycling sync skipped; stored weeks left unchanged")
        return 0

    week_map: dict[str, dict[str, float]] = {}
    for offset in range(weeks_back):
        week_key = (start_monday + timedelta(days=7 * offset)).isoformat()
        week_map[week_key] = {"rides": 0, "distance": 0.0, "moving_time": 0}

    for activity in activities:
        try:
            started = parse_timestamp(str(activity.get("start_date") or ""))
        except ValueError:
            continue
        bucket = week_map.get(monday_of_week(started.date()).isoformat())
        if bucket is None:
            continue
        bucket["rides"] += 1
        bucket["distance"] += float(activity.get("distance") or 0)
        bucket["moving_time"] += int(activity.get("moving_time") or 0)

    updated_at = format_utc(utcnow())
    for week_start, data in week_map.items():
        cursor.execute(
            """
            INSERT INTO cycling_weekly
                (week_start, has_ride, total_rides, total_distance_meters, total_moving_time_seconds, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (week_start) DO UPDATE SET
                has_ride = excluded.has_ride,
                total_rides = excluded.total_rides,
                total_distance_meters = excluded.total_distance_meters,
                total_moving_time_seconds = excluded.total_moving_time_seconds,
                updated_at = excluded.updated_at
            """,
            (
                week_start,
                1 if data["rides"] > 0 else 0,
                int(data["rides"]),
                data["distance"],
                int(data["moving_time"]),
                updated_at,
            ),
        )

    logger.info("Synced %s rides across %s weeks", len(activities), len(week_map))
    return len(week_map)


def get_cycling_weeks_for_range(cursor: DictCursor, start: date, end: date) -> list[dict[str, Any]]:
    cursor.execute(
        """
        SELECT week_start, has_ride, total_rides
        FROM cycling_weekly
        WHERE week_start >= ? AND week_start <= ?
        ORDER BY week_start ASC
        """,
        (start.isoformat(), end.isoformat()),
    )
    return [
        {
            "weekStart": str(row["week_start"]),
            "hasRide": int(row["has_ride"]) == 1,
            "totalRides": int(row["total_rides"] or 0),
        }
        for row in cursor.fetchall()
    ]
