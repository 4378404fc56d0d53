"""RQ Worker entrypoint."""

import logging
import os
import platform
import sys

from rq import SimpleWorker, Worker
from rq.job import Job

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from api.config import get_settings  # noqa: E402
from api.logging import setup_logging  # noqa: E402
from worker.redis import (  # noqa: E402
    QUEUE_DEFAULT,
    QUEUE_MAINTENANCE,
    get_redis_connection_bytes,
)
from worker.scheduler import ensure_reaper_schedule  # noqa: E402


def log_job_failure(
    job: Job,
    _exc_type: type,
    exc_value: Exception,
    _traceback: object,
) -> bool:
    """Exception handler: log the failure and let RQ's default handling continue."""
    logging.error(
        f"Job failed: {job.id} - {exc_value}",
        extra={"job_id": job.id, "func": job.func_name, "error": str(exc_value)},
    )
    return True


def run_worker() -> None:
    """Start the RQ worker and make sure the stale run sweep is scheduled."""
    settings = get_settings()
    setup_logging()

    queues = [QUEUE_DEFAULT, QUEUE_MAINTENANCE]
    logging.info(
        "Starting worker",
        extra={"env": settings.env, "queues": queues},
    )

    redis_conn = get_redis_connection_bytes()

    schedule_status = ensure_reaper_schedule()
    logging.info("Reaper schedule initialized", extra=schedule_status)

    # Use SimpleWorker on Windows (no os.fork() support)
    WorkerClass = SimpleWorker if platform.system() == "Windows" else Worker

    worker = WorkerClass(
        queues,
        connection=redis_conn,
        name=f"effectiveness-worker-{os.getpid()}",
        exception_handlers=[log_job_failure],
    )

    worker.work(
        with_scheduler=True,
        logging_level=settings.log_level,
    )


if __name__ == "__main__":
    run_worker()
