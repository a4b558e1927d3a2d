from datetime import time

import schedule

from gym_attendance.jobs import refresh_attendance, run_daily_rollup
from gym_attendance.scheduler import _run_safely, register_jobs
from helpers import fetch_rollup, fetch_visits, utc

NOW = utc(2025, 3, 7, 20, 0)


def failing_sync(cursor, **kwargs):
    raise RuntimeError("strava down")


def test_refresh_attendance_reaps_and_recomputes(cursor, ingest):
    ingest(utc(2025, 3, 6, 7, 0), "enter")

    result = refresh_attendance(cursor, now=NOW)

    assert result == {"closedVisits": 1, "rollupsUpdated": 8}
    visit = fetch_visits(cursor)[0]
    assert visit["auto_closed"] == 1
    assert visit["duration_minutes"] == 240
    assert fetch_rollup(cursor, "2025-03-06")["status"] == "visit"
    assert fetch_rollup(cursor, "2025-02-28")["status"] == "miss"


def test_daily_rollup_survives_sync_failure(cursor_factory, ingest):
    ingest(utc(2025, 3, 6, 7, 0), "enter")

    result = run_daily_rollup(cursor_factory, now=NOW, sync_cycling=failing_sync)

    assert result == {"closedVisits": 1, "rollupsUpdated": 8, "cyclingWeeksSynced": 0}


def test_failed_sync_rolls_back_only_its_own_writes(connection, cursor, cursor_factory, ingest):
    ingest(utc(2025, 3, 6, 7, 0), "enter")

    def sync_then_fail(sync_cursor, **kwargs):
        sync_cursor.execute(
            """
            INSERT INTO cycling_weekly
                (week_start, has_ride, total_rides, total_distance_meters, total_moving_time_seconds, updated_at)
            VALUES ('2025-03-03', 0, 0, 0, 0, '2025-03-07T20:00:00.000Z')
            """
        )
        raise RuntimeError("strava down mid-sync")

    run_daily_rollup(cursor_factory, now=NOW, sync_cycling=sync_then_fail)

    assert not connection.in_transaction
    assert fetch_visits(cursor)[0]["auto_closed"] == 1
    assert fetch_rollup(cursor, "2025-03-06")["status"] == "visit"
    cursor.execute("SELECT COUNT(*) AS n FROM cycling_weekly")
    assert cursor.fetchone()["n"] == 0


def test_attendance_is_committed_before_sync_starts(connection, cursor_factory, ingest):
    ingest(utc(2025, 3, 6, 7, 0), "enter")
    seen = {}

    def fake_sync(sync_cursor, **kwargs):
        seen["in_transaction"] = connection.in_transaction
        seen.update(kwargs)
        return 4

    result = run_daily_rollup(cursor_factory, now=NOW, sync_cycling=fake_sync)

    assert result["cyclingWeeksSynced"] == 4
    assert seen["in_transaction"] is False
    assert seen["today"].isoformat() == "2025-03-07"


def test_register_jobs_runs_daily_at_configured_time():
    scheduler = schedule.Scheduler()

    job = register_jobs(scheduler, job=lambda: None, run_at="01:15")

    assert scheduler.jobs == [job]
    assert job.unit == "days"
    assert job.at_time == time(1, 15)


def test_run_safely_swallows_job_errors(caplog):
    def boom():
        raise RuntimeError("db unavailable")

    _run_safely(boom)

    assert "Scheduled daily rollup failed" in caplog.text
