"""Periodic stale run sweep using rq-scheduler.

The API sweeps once at startup; this keeps sweeping while it runs so
runs orphaned by a dead process do not linger until the next deploy.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from rq_scheduler import Scheduler

from api.config import get_settings
from worker.redis import JOB_RESULT_TTL, QUEUE_MAINTENANCE, get_redis_connection_bytes
from worker.tasks.reaper import run_stale_run_sweep_sync

if TYPE_CHECKING:
    from redis import Redis
    from rq.job import Job

logger = structlog.get_logger(__name__)


def get_scheduler(connection: Redis | None = None) -> Scheduler:
    """Get a scheduler instance connected to Redis."""
    conn = connection or get_redis_connection_bytes()
    return Scheduler(queue_name=QUEUE_MAINTENANCE, connection=conn)


class ReaperScheduler:
    """Service for managing the periodic stale run sweep."""

    SWEEP_JOB_ID = "effectiveness_stale_run_sweep"

    def __init__(self, scheduler: Scheduler | None = None) -> None:
        self._scheduler = scheduler or get_scheduler()
        self._settings = get_settings()

    @property
    def scheduler(self) -> Scheduler:
        """Get the underlying rq-scheduler instance."""
        return self._scheduler

    def schedule_sweep(self, interval_seconds: int | None = None) -> Job | None:
        """
        Schedule the sweep to repeat every ``interval_seconds``.

        Returns:
            The scheduled job, or None if the reaper is disabled
        """
        if not self._settings.reaper_enabled:
            logger.info("stale_run_sweep_scheduling_skipped_disabled")
            return None

        interval = interval_seconds or self._settings.reaper_interval_seconds
        self.cancel_sweep()

        next_run = datetime.now(UTC) + timedelta(seconds=interval)
        job = self._scheduler.schedule(
            scheduled_time=next_run,
            func=run_stale_run_sweep_sync,
            interval=interval,
            repeat=None,  # Repeat indefinitely
            id=self.SWEEP_JOB_ID,
            result_ttl=JOB_RESULT_TTL,
            meta={
                "type": "stale_run_sweep",
                "scheduled_at": datetime.now(UTC).isoformat(),
                "interval_seconds": interval,
            },
        )

        logger.info(
            "stale_run_sweep_scheduled",
            job_id=job.id,
            next_run=next_run.isoformat(),
            interval_seconds=interval,
        )
        return job

    def _find_job(self) -> Job | None:
        for job in self._scheduler.get_jobs():
            if job.id == self.SWEEP_JOB_ID:
                return job
        return None

    def cancel_sweep(self) -> bool:
        """
        Cancel the scheduled sweep.

        Returns:
            True if cancelled, False if not found
        """
        job = self._find_job()
        if job is None:
            return False
        self._scheduler.cancel(job)
        logger.info("stale_run_sweep_cancelled", job_id=job.id)
        return True

    def get_sweep_status(self) -> dict[str, Any] | None:
        """Info about the scheduled sweep, or None if not scheduled."""
        job = self._find_job()
        if job is None:
            return None
        meta = job.meta or {}
        return {
            "job_id": job.id,
            "type": meta.get("type"),
            "scheduled_at": meta.get("scheduled_at"),
            "interval_seconds": meta.get("interval_seconds"),
        }

    def run_sweep_now(self, dry_run: bool = False) -> Job:
        """Enqueue a sweep to run immediately."""
        now = datetime.now(UTC)
        job = self._scheduler.enqueue_at(
            now,
            run_stale_run_sweep_sync,
            dry_run=dry_run,
            job_id=f"stale_run_sweep_manual_{now.isoformat()}",
            meta={"type": "stale_run_sweep", "trigger": "manual"},
        )
        logger.info("stale_run_sweep_enqueued_manually", job_id=job.id, dry_run=dry_run)
        return job


def ensure_reaper_schedule(scheduler: ReaperScheduler | None = None) -> dict[str, Any]:
    """
    Ensure the periodic sweep is scheduled with the configured interval.

    Call this at worker startup.
    """
    scheduler = scheduler or ReaperScheduler()
    settings = get_settings()

    result: dict[str, Any] = {
        "reaper_enabled": settings.reaper_enabled,
        "sweep_scheduled": False,
    }
    if not settings.reaper_enabled:
        logger.info("reaper_schedule_ensured", **result)
        return result

    status = scheduler.get_sweep_status()
    if status and status["interval_seconds"] == settings.reaper_interval_seconds:
        result["sweep_scheduled"] = True
        result["sweep_job_id"] = status["job_id"]
    else:
        job = scheduler.schedule_sweep()
        if job:
            result["sweep_scheduled"] = True
            result["sweep_job_id"] = job.id

    logger.info("reaper_schedule_ensured", **result)
    return result
