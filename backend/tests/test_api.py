from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from gym_attendance.db import DictCursor
from gym_attendance.main import app, get_cursor_factory, get_db


@pytest.fixture
def client(cursor_factory) -> Iterator[TestClient]:
    def override_get_db() -> Iterator[DictCursor]:
        with cursor_factory() as cursor:
            yield cursor

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cursor_factory] = lambda: cursor_factory
    # No context manager: the lifespan would open the configured ODBC database.
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_ingest_json_then_duplicate(client):
    payload = {"name": "Gym", "entry": "1", "date": "2025-03-03T07:00:00Z"}

    first = client.post("/ingest/geofency", json=payload)
    second = client.post("/ingest/geofency", json=payload)

    assert first.status_code == 201
    body = first.json()
    assert body["status"] == "created"
    assert body["session"]["action"] == "visit_started"
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"
    assert second.json()["event_id"] == body["event_id"]


def test_ingest_form_encoded(client):
    client.post("/ingest/geofency", data={"name": "Gym", "entry": "1", "date": "2025-03-03T07:00:00Z"})
    response = client.post("/ingest/geofency", data={"name": "Gym", "entry": "0", "date": "2025-03-03T07:45:00Z"})

    assert response.status_code == 201
    session = response.json()["session"]
    assert session["action"] == "visit_closed"
    assert session["duration"] == 45
    assert session["isQualified"] is True


def test_ingest_missing_fields(client):
    response = client.post("/ingest/geofency", json={"name": "Gym"})

    assert response.status_code == 400
    assert "Missing required fields" in response.json()["detail"]


def test_ingest_rejects_non_object_body(client):
    response = client.post("/ingest/geofency", json=["Gym"])

    assert response.status_code == 400


@pytest.mark.parametrize("weeks, expected", [(20, 20), (100, 52), (None, 12)])
def test_summary_clamps_weeks(client, weeks, expected):
    params = {"mode": "weekly", "target": 3}
    if weeks is not None:
        params["weeks"] = weeks

    response = client.get("/gym/summary", params=params)

    assert response.status_code == 200
    assert response.headers["Cache-Control"] == "public, max-age=300"
    body = response.json()
    assert body["heatmap"]["weeks"] == expected
    assert len(body["heatmap"]["grid"]) == expected
    assert body["currentPeriod"]["target"] == 3


def test_summary_rejects_unknown_mode(client):
    assert client.get("/gym/summary", params={"mode": "daily"}).status_code == 400


def test_manual_entries(client):
    bad = client.post("/gym/manual", json={"entries": [{"date": "2025-13-01", "status": "visit"}]})
    good = client.post("/gym/manual", json={"entries": [{"date": "2025-03-03", "status": "visit"}]})

    assert bad.status_code == 400
    assert good.status_code == 200
    assert good.json() == {
        "success": True,
        "message": "1 manual entries set",
        "entries": [{"date": "2025-03-03", "status": "visit"}],
    }


def test_daily_rollup_endpoint(client):
    # Without stored Strava tokens the cycling sync writes nothing and never calls out.
    response = client.post("/jobs/daily-rollup")

    assert response.status_code == 200
    assert response.json()["closedVisits"] == 0
    assert response.json()["rollupsUpdated"] == 8
    assert response.json()["cyclingWeeksSynced"] == 0


def test_strava_sync_endpoint_defaults_weeks(client, monkeypatch):
    calls = []

    def fake_sync(cursor, weeks_back):
        calls.append(weeks_back)
        return weeks_back

    monkeypatch.setattr("gym_attendance.main.sync_cycling_weekly", fake_sync)

    assert client.post("/strava/sync").json() == {"ok": True, "weeksSynced": 4}
    assert client.post("/strava/sync", json={"weeksBack": 6}).json() == {"ok": True, "weeksSynced": 6}
    assert calls == [4, 6]
