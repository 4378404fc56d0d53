"""Stale run sweep task run by the RQ worker."""

import asyncio
import uuid
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import create_async_engine

from api.config import get_settings
from api.database import create_session_maker, engine_options
from worker.effectiveness.reaper import StaleRunReaper

logger = structlog.get_logger(__name__)


async def run_stale_run_sweep(
    stale_after_hours: float | None = None,
    dry_run: bool = False,
    client_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """
    Fail runs stuck in a non-terminal status.

    Uses its own engine: each job runs in a fresh event loop, so pooled
    connections from an earlier loop cannot be reused.
    """
    settings = get_settings()
    hours = stale_after_hours or settings.stale_run_hours
    url = str(settings.database_url)
    engine = create_async_engine(url, **engine_options(url))
    try:
        reaper = StaleRunReaper(create_session_maker(engine))
        result = await reaper.sweep(timedelta(hours=hours), dry_run=dry_run, client_id=client_id)
    finally:
        await engine.dispose()
    return result.to_dict()


def run_stale_run_sweep_sync(
    stale_after_hours: float | None = None,
    dry_run: bool = False,
) -> dict[str, Any]:
    """
    Synchronous wrapper for the stale run sweep.

    Called by rq-scheduler as a background job.
    """
    settings = get_settings()
    if not settings.reaper_enabled:
        logger.info("stale_run_sweep_disabled")
        return {"status": "disabled", "cleaned_runs": 0}

    result = asyncio.run(run_stale_run_sweep(stale_after_hours, dry_run))
    logger.info(
        "stale_run_sweep_job_completed",
        total_stale_runs=result["total_stale_runs"],
        cleaned_runs=result["cleaned_runs"],
    )
    return {"status": "completed", **result}
