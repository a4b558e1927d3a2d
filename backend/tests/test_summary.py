from datetime import date

import pytest
from fastapi import HTTPException

from gym_attendance.summary import build_summary, clamp_weeks, current_period_stats, resolve_window
from helpers import utc

NOW = utc(2025, 3, 7, 20, 0)  # Friday evening


@pytest.mark.parametrize("requested, expected", [(None, 12), (4, 12), (20, 20), (80, 52)])
def test_clamp_weeks(requested, expected):
    assert clamp_weeks(requested) == expected


def test_window_from_week_count_ends_with_current_week():
    start, weeks = resolve_window(date(2025, 3, 7), None, 12)

    assert start == date(2024, 12, 16)
    assert weeks == 12


def test_window_from_explicit_start_snaps_to_monday_and_runs_to_year_end():
    start, weeks = resolve_window(date(2025, 3, 7), "2025-01-01", None)

    assert start == date(2024, 12, 30)
    assert weeks == 53


def test_window_rejects_bad_start():
    with pytest.raises(HTTPException) as excinfo:
        resolve_window(date(2025, 3, 7), "01/01/2025", None)
    assert excinfo.value.status_code == 400


def test_summary_assembles_all_parts(cursor, record_visit):
    record_visit(utc(2025, 3, 4, 7, 0), 40)
    record_visit(utc(2025, 3, 5, 7, 0), 50)
    record_visit(utc(2025, 3, 6, 7, 0), 30)
    record_visit(utc(2025, 3, 7, 7, 0), 60)
    record_visit(utc(2025, 3, 1, 9, 0), 45)  # Saturday

    summary = build_summary(cursor, mode="weekly", target=4, now=NOW)

    assert summary["currentPeriod"] == {
        "label": "This Week",
        "visits": 4,
        "target": 4,
        "progressPercent": 100,
    }
    assert summary["stats"] == {
        "totalVisits": 4,
        "totalMinutes": 180,
        "currentStreak": 4,
        "longestStreak": 4,
    }
    heatmap = summary["heatmap"]
    assert heatmap["weeks"] == 12
    assert len(heatmap["grid"]) == 12
    last_week = heatmap["grid"][-1]
    assert last_week["weekStart"] == "2025-03-03"
    assert [day["status"] for day in last_week["days"]] == ["miss", "visit", "visit", "visit", "visit"]
    assert summary["cycling"] == {"weeks": []}
    assert summary["generatedAt"] == "2025-03-07T20:00:00.000Z"


def test_summary_marks_days_after_today_future(cursor):
    summary = build_summary(cursor, mode="weekly", target=3, now=utc(2025, 3, 5, 12, 0))

    last_week = summary["heatmap"]["grid"][-1]["days"]
    assert [day["status"] for day in last_week] == ["miss", "miss", "miss", "future", "future"]
    cursor.execute("SELECT MAX(roll_date) AS last FROM daily_rollups")
    assert cursor.fetchone()["last"] == "2025-03-05"


def test_monthly_period_and_rounding(cursor, record_visit):
    record_visit(utc(2025, 3, 3, 7, 0), 40)

    stats = current_period_stats(cursor, "monthly", 3, date(2025, 3, 7))

    assert stats == {"label": "This Month", "visits": 1, "target": 3, "progressPercent": 33}
    assert current_period_stats(cursor, "monthly", 0, date(2025, 3, 7))["progressPercent"] == 0


def test_summary_includes_cycling_overlay(cursor):
    cursor.execute(
        """
        INSERT INTO cycling_weekly
            (week_start, has_ride, total_rides, total_distance_meters, total_moving_time_seconds, updated_at)
        VALUES (?, 1, 2, 42000, 5400, ?)
        """,
        ("2025-02-24", "2025-03-01T00:00:00.000Z"),
    )

    summary = build_summary(cursor, now=NOW)

    assert summary["cycling"]["weeks"] == [
        {"weekStart": "2025-02-24", "hasRide": True, "totalRides": 2}
    ]


def test_summary_rejects_unknown_mode(cursor):
    with pytest.raises(HTTPException) as excinfo:
        build_summary(cursor, mode="yearly", now=NOW)
    assert excinfo.value.status_code == 400
