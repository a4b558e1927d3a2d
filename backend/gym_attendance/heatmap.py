from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Dict, List, Sequence

from .rollups import STATUS_FUTURE
from .timeutils import MONTH_ABBR


def build_heatmap(
    rollups: Sequence[Dict[str, Any]],
    start: date,
    weeks: int,
) -> dict[str, Any]:
    """Arrange rollups into Monday-Friday week columns plus month labels.

    ``start`` is the Monday of the first column. Days without a rollup row
    are reported as ``future``. Consecutive weeks whose Monday falls in the
    same month share one label.
    """

    status_by_date = {str(item["date"]): str(item["status"]) for item in rollups}
    grid: List[Dict[str, Any]] = []
    month_labels: List[Dict[str, Any]] = []

    current_month: str | None = None
    label_start_week = 0
    label_span = 0

    for week_index in range(weeks):
        week_start = start + timedelta(days=7 * week_index)
        month = MONTH_ABBR[week_start.month - 1]
        if month != current_month:
            if current_month is not None and label_span > 0:
                month_labels.append(
                    {"month": current_month, "weekIndex": label_start_week, "weekSpan": label_span}
                )
            current_month = month
            label_start_week = week_index
            label_span = 1
        else:
            label_span += 1

        days = []
        for offset in range(5):
            day = week_start + timedelta(days=offset)
            key = day.isoformat()
            days.append(
                {
                    "date": key,
                    "dayOfWeek": offset + 1,
                    "status": status_by_date.get(key, STATUS_FUTURE),
                }
            )
        grid.append({"weekStart": week_start.isoformat(), "days": days})

    if current_month is not None and label_span > 0:
        month_labels.append(
            {"month": current_month, "weekIndex": label_start_week, "weekSpan": label_span}
        )

    return {"weeks": weeks, "grid": grid, "monthLabels": month_labels}
