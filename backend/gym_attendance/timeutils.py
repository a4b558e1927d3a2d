"""Timestamp and calendar helpers shared by the sessionizer and rollups."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Iterator

from dateutil import parser as date_parser

from .config import settings, validate_timezone

MONTH_ABBR = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_utc(value: datetime) -> str:
    """Render an aware datetime as ``YYYY-MM-DDTHH:MM:SS.sssZ``.

    Every stored timestamp uses this exact shape so that lexical comparison
    in SQL matches chronological order.
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(text: str) -> datetime:
    """Parse a webhook timestamp into an aware UTC datetime.

    Naive values are taken as UTC.

    Raises:
        ValueError: If the text is not a recognizable date/time.
    """

    try:
        parsed = date_parser.parse(text.strip())
    except (ValueError, OverflowError) as exc:
        raise ValueError(f"unparseable timestamp: {text!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_utc(stored: str) -> datetime:
    return datetime.fromisoformat(stored.replace("Z", "+00:00"))


def local_date(value: datetime, tz_name: str | None = None) -> date:
    tz = validate_timezone(tz_name or settings.timezone)
    return value.astimezone(tz).date()


def today_local(now: datetime | None = None, tz_name: str | None = None) -> date:
    return local_date(now or utcnow(), tz_name)


def parse_iso_date(value: str) -> date:
    return datetime.strptime(value, "%Y-%m-%d").date()


def day_of_week(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""

    return day.isoweekday() % 7


def is_workday(day: date) -> bool:
    return 1 <= day_of_week(day) <= 5


def monday_of_week(day: date) -> date:
    return day - timedelta(days=day.weekday())


def iter_dates(start: date, end: date) -> Iterator[date]:
    cursor = start
    while cursor <= end:
        yield cursor
        cursor += timedelta(days=1)
