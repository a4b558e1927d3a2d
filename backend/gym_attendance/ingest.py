from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from fastapi import HTTPException, status

from .db import DictCursor
from .sessionizer import sessionize_event
from .timeutils import format_utc, parse_timestamp

logger = logging.getLogger(__name__)

_MISSING_FIELDS_DETAIL = "Missing required fields: name/location, entry/action, date/timestamp"


@dataclass(frozen=True)
class NormalizedEvent:
    timestamp: datetime
    action: str
    location_name: str

    @property
    def timestamp_text(self) -> str:
        return format_utc(self.timestamp)


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def _normalize_action(payload: Mapping[str, Any]) -> str | None:
    raw_action = _clean_text(payload.get("action")).lower()
    if raw_action:
        return raw_action if raw_action in {"enter", "exit"} else None

    flag = _to_int(payload.get("entry"))
    if flag == 1:
        return "enter"
    if flag == 0:
        return "exit"
    return None


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def normalize_payload(payload: Mapping[str, Any]) -> NormalizedEvent:
    """Extract (timestamp, action, location) from a Geofency-style payload.

    Accepts ``name``/``entry``/``date`` as sent by the app, or the
    ``location``/``action``/``timestamp`` aliases.
    """

    location_name = _clean_text(payload.get("name")) or _clean_text(payload.get("location"))
    if not location_name:
        raise _bad_request(_MISSING_FIELDS_DETAIL)

    action = _normalize_action(payload)
    if action is None:
        raise _bad_request(_MISSING_FIELDS_DETAIL)

    raw_timestamp = _clean_text(payload.get("date")) or _clean_text(payload.get("timestamp"))
    if not raw_timestamp:
        raise _bad_request(_MISSING_FIELDS_DETAIL)

    try:
        timestamp = parse_timestamp(raw_timestamp)
    except ValueError as exc:
        raise _bad_request(f"Invalid timestamp: {raw_timestamp}") from exc

    return NormalizedEvent(timestamp=timestamp, action=action, location_name=location_name)


def event_hash(timestamp: str, action: str, location_name: str) -> str:
    return hashlib.sha256(f"{timestamp}|{action}|{location_name}".encode("utf-8")).hexdigest()


def _fetch_event_id_by_hash(cursor: DictCursor, hash_value: str) -> int | None:
    cursor.execute("SELECT id FROM events WHERE event_hash = ?", (hash_value,))
    row = cursor.fetchone()
    return int(row["id"]) if row else None


def ingest_event(
    cursor: DictCursor,
    payload: Mapping[str, Any],
    tz_name: str | None = None,
) -> dict[str, Any]:
    """Store a webhook event once and sessionize it.

    Returns a ``duplicate`` result without touching visits when the same
    (timestamp, action, location) was already recorded.
    """

    event = normalize_payload(payload)
    timestamp = event.timestamp_text
    hash_value = event_hash(timestamp, event.action, event.location_name)

    existing_id = _fetch_event_id_by_hash(cursor, hash_value)
    if existing_id is None:
        cursor.execute(
            """
            INSERT INTO events (event_hash, timestamp, action, location_name, raw_payload)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (event_hash) DO NOTHING
            RETURNING id
            """,
            (
                hash_value,
                timestamp,
                event.action,
                event.location_name,
                json.dumps(dict(payload), default=str, sort_keys=True),
            ),
        )
        inserted = cursor.fetchone()
        if inserted is None:
            existing_id = _fetch_event_id_by_hash(cursor, hash_value)
        else:
            event_id = int(inserted["id"])

    if existing_id is not None:
        logger.info("Duplicate %s event for %s at %s", event.action, event.location_name, timestamp)
        return {
            "status": "duplicate",
            "message": "Event already recorded",
            "event_id": existing_id,
            "event_hash": hash_value,
        }

    session = sessionize_event(
        cursor,
        event_id=event_id,
        timestamp=event.timestamp,
        action=event.action,
        location_name=event.location_name,
        tz_name=tz_name,
    )
    logger.info(
        "Event %s stored: %s %s at %s -> %s",
        event_id,
        event.action,
        event.location_name,
        timestamp,
        session.action,
    )
    return {
        "status": "created",
        "event_id": event_id,
        "event_hash": hash_value,
        "action": event.action,
        "timestamp": timestamp,
        "location": event.location_name,
        "session": session.to_payload(),
    }
