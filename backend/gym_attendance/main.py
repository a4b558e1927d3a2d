from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterator

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .cycling import sync_cycling_weekly
from .db import DictCursor, get_cursor, init_schema, validate_db_for_startup
from .ingest import ingest_event
from .jobs import CursorFactory, run_daily_rollup
from .rollups import set_manual_entries
from .summary import build_summary
from .timeutils import format_utc, utcnow

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    validate_db_for_startup()
    with get_cursor() as cursor:
        init_schema(cursor)
    logger.info("Gym attendance API ready (timezone=%s)", settings.timezone)
    yield


app = FastAPI(title="Gym Attendance API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Auth-Token"],
)


def get_db() -> Iterator[DictCursor]:
    with get_cursor() as cursor:
        yield cursor


def get_cursor_factory() -> CursorFactory:
    return get_cursor


async def _read_payload(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    try:
        if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
            form = await request.form()
            return {key: value for key, value in form.items() if isinstance(value, str)}
        payload = await request.json()
    except (ValueError, UnicodeDecodeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid request body",
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid request body",
        )
    return payload


async def _read_optional_json(request: Request) -> dict[str, Any]:
    body = await request.body()
    if not body.strip():
        return {}
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid request body",
        ) from exc
    return payload if isinstance(payload, dict) else {}


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "timestamp": format_utc(utcnow())}


@app.post("/ingest/geofency")
async def ingest_geofency(request: Request, cursor: DictCursor = Depends(get_db)) -> JSONResponse:
    payload = await _read_payload(request)
    result = ingest_event(cursor, payload)
    code = status.HTTP_201_CREATED if result["status"] == "created" else status.HTTP_200_OK
    return JSONResponse(content=result, status_code=code)


@app.get("/gym/summary")
def gym_summary(
    response: Response,
    mode: str = Query("weekly"),
    target: int = Query(4),
    weeks: int | None = Query(None),
    start: str | None = Query(None),
    cursor: DictCursor = Depends(get_db),
) -> dict[str, Any]:
    summary = build_summary(cursor, mode=mode, target=target, start_value=start, weeks=weeks)
    response.headers["Cache-Control"] = f"public, max-age={settings.summary_cache_seconds}"
    return summary


@app.post("/gym/manual")
async def gym_manual(request: Request, cursor: DictCursor = Depends(get_db)) -> dict[str, Any]:
    body = await _read_payload(request)
    entries = set_manual_entries(cursor, body.get("entries"))
    return {
        "success": True,
        "message": f"{len(entries)} manual entries set",
        "entries": entries,
    }


@app.post("/jobs/daily-rollup")
def daily_rollup(cursor_factory: CursorFactory = Depends(get_cursor_factory)) -> dict[str, Any]:
    return run_daily_rollup(cursor_factory)


@app.post("/strava/sync")
async def strava_sync(request: Request, cursor: DictCursor = Depends(get_db)) -> dict[str, Any]:
    body = await _read_optional_json(request)
    try:
        weeks_back = int(body.get("weeksBack") or 4)
    except (TypeError, ValueError):
        weeks_back = 4
    count = sync_cycling_weekly(cursor, weeks_back=weeks_back)
    return {"ok": True, "weeksSynced": count}
