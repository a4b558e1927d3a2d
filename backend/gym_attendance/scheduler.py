from __future__ import annotations

import logging
import time
from typing import Callable

import schedule

from .config import settings
from .jobs import run_daily_rollup

logger = logging.getLogger(__name__)


def _run_safely(job: Callable[[], object]) -> None:
    try:
        result = job()
    except Exception:
        # Keep the loop alive; the next run recomputes the same trailing window.
        logger.exception("Scheduled daily rollup failed")
        return
    logger.info("Scheduled daily rollup finished: %s", result)


def register_jobs(
    scheduler: schedule.Scheduler,
    job: Callable[[], object] = run_daily_rollup,
    run_at: str | None = None,
) -> schedule.Job:
    # schedule evaluates "at" times against the process's local clock.
    return scheduler.every().day.at(run_at or settings.job_run_at).do(_run_safely, job)


def run_forever(poll_seconds: int = 30) -> None:
    scheduler = schedule.Scheduler()
    registered = register_jobs(scheduler)
    logger.info("Daily rollup scheduled: %s", registered)
    while True:
        scheduler.run_pending()
        time.sleep(poll_seconds)
