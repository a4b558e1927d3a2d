from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, Iterator

import pytest

from gym_attendance.db import DictCursor, init_schema
from gym_attendance.ingest import ingest_event


@pytest.fixture
def connection() -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    init_schema(DictCursor(conn.cursor()))
    yield conn
    conn.close()


@pytest.fixture
def cursor(connection: sqlite3.Connection) -> Iterator[DictCursor]:
    wrapped = DictCursor(connection.cursor())
    yield wrapped
    wrapped.close()


@pytest.fixture
def cursor_factory(connection: sqlite3.Connection) -> Callable[[], ContextManager[DictCursor]]:
    """Per-unit transactions over the shared connection, like ``get_cursor``."""

    @contextmanager
    def _factory() -> Iterator[DictCursor]:
        wrapped = DictCursor(connection.cursor())
        try:
            yield wrapped
            connection.commit()
        except Exception:
            connection.rollback()
            raise
        finally:
            wrapped.close()

    return _factory


@pytest.fixture
def ingest(cursor: DictCursor) -> Callable[..., dict[str, Any]]:
    def _ingest(when: datetime, action: str, location: str = "Gym", **extra: Any) -> dict[str, Any]:
        payload = {"location": location, "action": action, "timestamp": when.isoformat(), **extra}
        return ingest_event(cursor, payload)

    return _ingest


@pytest.fixture
def record_visit(ingest: Callable[..., dict[str, Any]]) -> Callable[..., None]:
    """Enter at ``start`` and exit ``minutes`` later."""

    def _record(start: datetime, minutes: int, location: str = "Gym") -> None:
        ingest(start, "enter", location)
        ingest(start + timedelta(minutes=minutes), "exit", location)

    return _record

