"""Stale run reaper.

Runs left in a non-terminal status past a timeout (e.g. the process that
owned them died) are marked failed so they stop blocking new analyses.
This is a status rewrite only; in-flight work is not signalled.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.metrics import record_stale_runs_reaped
from api.models import RunStatus
from api.models.base import ensure_utc, utcnow
from api.services import run_service
from worker.effectiveness.errors import ErrorCategory, StepError, describe_exception
from worker.effectiveness.progress import ProgressRecord, ProgressRegistry

logger = structlog.get_logger(__name__)


@dataclass
class StaleRun:
    """A run found stale by a sweep."""

    id: str
    client_id: str
    competitor_id: str | None
    status: str
    created_at: datetime
    age_hours: float
    progress_detail: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "competitor_id": self.competitor_id,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "age_hours": self.age_hours,
            "progress_detail": self.progress_detail,
        }


@dataclass
class SweepResult:
    """Summary of one sweep."""

    dry_run: bool
    stale_after_hours: float
    total_stale_runs: int = 0
    cleaned_runs: int = 0
    stale_runs: list[StaleRun] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def stale_pending_runs(self) -> list[StaleRun]:
        return [r for r in self.stale_runs if r.status == RunStatus.PENDING]

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "stale_after_hours": self.stale_after_hours,
            "total_stale_runs": self.total_stale_runs,
            "cleaned_runs": self.cleaned_runs,
            "stale_pending_runs": len(self.stale_pending_runs),
            "stale_runs": [r.to_dict() for r in self.stale_runs],
            "errors": self.errors,
        }


def timeout_detail(age_hours: float, now: datetime) -> str:
    return (
        f"Run timed out after {age_hours:g} hours - marked as failed by cleanup "
        f"process at {now.isoformat()}"
    )


class StaleRunReaper:
    """Marks runs stuck in a non-terminal status as failed."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        registry: ProgressRegistry | None = None,
    ):
        self.session_maker = session_maker
        self.registry = registry

    async def sweep(
        self,
        stale_after: timedelta,
        dry_run: bool = False,
        client_id: uuid.UUID | None = None,
    ) -> SweepResult:
        """
        Fail every non-terminal run created more than ``stale_after`` ago.

        Each update re-checks the status, so a run that finished since the
        scan, or a second sweep, changes nothing.

        Args:
            stale_after: Age after which a non-terminal run is stale
            dry_run: Report candidates without writing
            client_id: Restrict the sweep to one client

        Returns:
            SweepResult with the candidates and what was changed
        """
        now = utcnow()
        result = SweepResult(
            dry_run=dry_run,
            stale_after_hours=round(stale_after.total_seconds() / 3600, 2),
        )

        async with self.session_maker() as db:
            runs = await run_service.list_stale_runs(db, now - stale_after, client_id)

        result.total_stale_runs = len(runs)
        if not runs:
            logger.info("stale_run_sweep_clean", stale_after_hours=result.stale_after_hours)
            return result

        for run in runs:
            age_hours = round((now - ensure_utc(run.created_at)).total_seconds() / 3600, 1)
            stale = StaleRun(
                id=str(run.id),
                client_id=str(run.client_id),
                competitor_id=str(run.competitor_id) if run.competitor_id else None,
                status=run.status,
                created_at=ensure_utc(run.created_at),
                age_hours=age_hours,
                progress_detail=run.progress_detail,
            )
            result.stale_runs.append(stale)

            logger.info(
                "stale_run_found",
                run_id=stale.id,
                client_id=stale.client_id,
                competitor_id=stale.competitor_id,
                status=stale.status,
                age_hours=age_hours,
                dry_run=dry_run,
            )
            if dry_run:
                continue

            detail = timeout_detail(age_hours, now)
            error = StepError(
                step="stale_run_sweep",
                category=ErrorCategory.NETWORK_TIMEOUT,
                message=detail,
            )
            try:
                async with self.session_maker() as db:
                    changed = await run_service.fail_if_active(
                        db, run.id, detail, error=error.to_dict()
                    )
                    await db.commit()
            except Exception as e:
                result.errors.append({"run_id": stale.id, "error": describe_exception(e)})
                logger.error("stale_run_fail_write_failed", run_id=stale.id, error=str(e))
                continue

            if changed:
                result.cleaned_runs += 1
                self._publish_failure(stale, detail)

        record_stale_runs_reaped(result.cleaned_runs)
        logger.info(
            "stale_run_sweep_completed",
            total_stale_runs=result.total_stale_runs,
            cleaned_runs=result.cleaned_runs,
            errors=len(result.errors),
            dry_run=dry_run,
        )
        return result

    def _publish_failure(self, stale: StaleRun, detail: str) -> None:
        """Let anyone still watching the run see it fail."""
        if self.registry is None:
            return
        current = self.registry.get(stale.id)
        if current is not None and current.is_terminal:
            return
        self.registry.set(
            stale.id,
            ProgressRecord(
                run_id=stale.id,
                client_id=stale.client_id,
                competitor_id=stale.competitor_id,
                status=RunStatus.FAILED.value,
                progress=current.progress if current else 0,
                detail=detail,
                step="stale_run_sweep",
                overall_percent=current.overall_percent if current else 0,
            ),
        )
