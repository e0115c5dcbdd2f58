"""APScheduler wrapper that records every job run."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import STATE_RUNNING
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .db import DatabaseManager

logger = logging.getLogger(__name__)


JobCallable = Callable[[], Any]


@dataclass(frozen=True, slots=True)
class SchedulerSnapshot:
    total_jobs: int
    running: bool
    next_runs: dict[str, str | None]


class SchedulerManager:
    """Background scheduler whose jobs never overlap themselves."""

    def __init__(self, db: DatabaseManager, *, scheduler: BackgroundScheduler | None = None) -> None:
        self.db = db
        self.scheduler = scheduler or BackgroundScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 90,
            }
        )

    def start(self) -> None:
        self.scheduler.start()
        logger.info("Scheduler started with %d jobs", len(self.scheduler.get_jobs()))
        self.publish_health()

    def shutdown(self) -> None:
        if self.scheduler.state == STATE_RUNNING:
            self.scheduler.shutdown(wait=True)
        logger.info("Scheduler shutdown complete.")
        self.publish_health()

    def run_recorded(self, func: JobCallable, job_id: str) -> None:
        """Run ``func`` once, recording its duration and outcome."""
        start_time = datetime.now(timezone.utc)
        try:
            logger.debug("Running job %s", job_id)
            func()
        except Exception as exc:
            duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
            logger.exception("Job %s failed", job_id)
            self.db.record_job_run(
                job_id=job_id,
                status="failure",
                started_at=start_time,
                duration_ms=duration_ms,
                error=str(exc),
            )
            return
        duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
        logger.debug("Job %s completed in %.2fms", job_id, duration_ms)
        self.db.record_job_run(job_id=job_id, status="success", started_at=start_time, duration_ms=duration_ms)

    def add_recurring_job(
        self,
        func: JobCallable,
        *,
        trigger: str,
        id: str,
        **trigger_kwargs: Any,
    ) -> None:
        if trigger == "interval":
            trig = IntervalTrigger(**trigger_kwargs)
        elif trigger == "cron":
            trig = CronTrigger(**trigger_kwargs)
        else:
            raise ValueError(f"Unsupported trigger type: {trigger}")

        self.scheduler.add_job(
            self.run_recorded,
            trig,
            args=(func, id),
            id=id,
            replace_existing=True,
            max_instances=1,
        )
        logger.info("Registered job %s with trigger %s", id, trigger)

    def snapshot(self) -> SchedulerSnapshot:
        jobs = self.scheduler.get_jobs()
        next_runs = {
            job.id: job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None
            for job in jobs
        }
        running = self.scheduler.state == STATE_RUNNING
        return SchedulerSnapshot(total_jobs=len(jobs), running=running, next_runs=next_runs)

    def publish_health(self) -> None:
        snapshot = self.snapshot()
        self.db.log_event(
            "INFO" if snapshot.running else "WARNING",
            "scheduler",
            "running" if snapshot.running else "stopped",
            {"next_runs": snapshot.next_runs},
        )
