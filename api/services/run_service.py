"""Run service for effectiveness run persistence.

Runs are only ever mutated through this service. Status writes follow the
run state machine: terminal runs are sticky, and a status write against
one is a no-op that returns the run unchanged.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from api.exceptions import NotFoundError
from api.models import (
    ACTIVE_STATUSES,
    CriterionScore,
    EffectivenessRun,
    RunStatus,
    can_transition,
)
from api.models.base import utcnow
from api.models.run import STATUS_PROGRESS

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ClientRun:
    """The client's own site."""

    @property
    def competitor_id(self) -> None:
        return None

    @property
    def label(self) -> str:
        return "client"


@dataclass(frozen=True)
class CompetitorRun:
    """One competitor's site."""

    competitor_id: uuid.UUID

    @property
    def label(self) -> str:
        return "competitor"


RunKind = ClientRun | CompetitorRun


def kind_of(run: EffectivenessRun) -> RunKind:
    """Tagged kind of an existing run."""
    if run.competitor_id is None:
        return ClientRun()
    return CompetitorRun(run.competitor_id)


def _kind_clause(kind: RunKind) -> Any:
    match kind:
        case ClientRun():
            return EffectivenessRun.competitor_id.is_(None)
        case CompetitorRun(competitor_id=competitor_id):
            return EffectivenessRun.competitor_id == competitor_id


def _decimal(value: float) -> Decimal:
    return Decimal(str(round(value, 2)))


TIER_TIMESTAMP_FIELDS = {
    1: "tier1_completed_at",
    2: "tier2_completed_at",
    3: "tier3_completed_at",
}


class RunService:
    """Service for effectiveness run operations."""

    async def create_run(
        self,
        db: AsyncSession,
        client_id: uuid.UUID,
        url: str,
        kind: RunKind,
    ) -> EffectivenessRun:
        """Create a pending run for the client or one competitor."""
        run = EffectivenessRun(
            client_id=client_id,
            competitor_id=kind.competitor_id,
            url=url,
            status=RunStatus.PENDING.value,
            progress=0,
            progress_detail="Queued",
            error_details=[],
        )
        db.add(run)
        await db.flush()
        await db.refresh(run)
        return run

    async def find_run(
        self,
        db: AsyncSession,
        run_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> EffectivenessRun | None:
        """Get a run by ID, or None. ``for_update`` locks the row until commit."""
        query = (
            select(EffectivenessRun)
            .options(selectinload(EffectivenessRun.criterion_scores))
            .where(EffectivenessRun.id == run_id)
        )
        if for_update:
            query = query.with_for_update(of=EffectivenessRun).execution_options(
                populate_existing=True
            )
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_run(
        self,
        db: AsyncSession,
        run_id: uuid.UUID,
        client_id: uuid.UUID | None = None,
        *,
        for_update: bool = False,
    ) -> EffectivenessRun:
        """Get a run by ID, optionally checking it belongs to a client."""
        run = await self.find_run(db, run_id, for_update=for_update)
        if run is None or (client_id is not None and run.client_id != client_id):
            raise NotFoundError("Run", str(run_id))
        return run

    async def get_pending_run(
        self,
        db: AsyncSession,
        client_id: uuid.UUID,
        kind: RunKind | None = None,
        *,
        newer_than: datetime | None = None,
    ) -> EffectivenessRun | None:
        """
        Get the most recent non-terminal run for an entity.

        Runs created before ``newer_than`` are ignored so that a run left
        behind by a crashed process does not block new analyses until the
        reaper gets to it.
        """
        query = select(EffectivenessRun).where(
            EffectivenessRun.client_id == client_id,
            _kind_clause(kind or ClientRun()),
            EffectivenessRun.status.in_([s.value for s in ACTIVE_STATUSES]),
        )
        if newer_than is not None:
            query = query.where(EffectivenessRun.created_at >= newer_than)
        result = await db.execute(query.order_by(EffectivenessRun.created_at.desc()).limit(1))
        return result.scalar_one_or_none()

    async def update_run(
        self,
        db: AsyncSession,
        run: EffectivenessRun,
        status: RunStatus | None = None,
        *,
        detail: str | None = None,
        progress: int | None = None,
        **fields: Any,
    ) -> EffectivenessRun:
        """
        Update run status, progress and artifact fields.

        Raises:
            ValueError: the status would move the run backwards
        """
        if run.is_terminal:
            logger.info(
                "run_update_ignored_terminal",
                run_id=str(run.id),
                status=run.status,
                requested=status.value if status else None,
            )
            return run

        if status is not None:
            if not can_transition(run.status, status):
                raise ValueError(f"Illegal run transition {run.status} -> {status.value}")
            run.status = status.value
            if progress is None and status in STATUS_PROGRESS:
                progress = STATUS_PROGRESS[status]
            if status == RunStatus.COMPLETED:
                run.completed_at = utcnow()

        if progress is not None:
            run.progress = max(0, min(100, progress))
        if detail is not None:
            run.progress_detail = detail

        for name, value in fields.items():
            if not hasattr(EffectivenessRun, name):
                raise AttributeError(f"EffectivenessRun has no field '{name}'")
            setattr(run, name, value)

        run.updated_at = utcnow()
        await db.flush()
        return run

    def append_errors(self, run: EffectivenessRun, errors: Iterable[dict[str, Any]]) -> None:
        """Append tagged step errors to the run's error details."""
        new_errors = list(errors)
        if new_errors:
            # Reassign so the JSON column is marked dirty
            run.error_details = [*(run.error_details or []), *new_errors]

    async def create_criterion_score(
        self,
        db: AsyncSession,
        run_id: uuid.UUID,
        *,
        criterion: str,
        tier: int,
        score: float,
        evidence: dict[str, Any],
        passes: dict[str, list[str]],
    ) -> CriterionScore:
        """Insert one criterion score; (run_id, criterion) is unique."""
        row = CriterionScore(
            run_id=run_id,
            criterion=criterion,
            tier=tier,
            score=_decimal(score),
            evidence=evidence,
            passes=passes,
        )
        db.add(row)
        await db.flush()
        return row

    async def record_tier_scores(
        self,
        db: AsyncSession,
        run: EffectivenessRun,
        tier: int,
        scores: Iterable[dict[str, Any]],
        status: RunStatus,
        *,
        detail: str | None = None,
        errors: Iterable[dict[str, Any]] = (),
        overall_score: float | None = None,
        score_evidence: dict[str, Any] | None = None,
    ) -> bool:
        """
        Write a finished tier's criterion scores together with the run update.

        Everything goes through the caller's session and becomes visible
        on its single commit. With ``overall_score`` the write is the final
        aggregation and moves the run to completed.

        Returns:
            False if the run was already terminal and nothing was written
        """
        if run.is_terminal:
            logger.info("tier_write_skipped_terminal", run_id=str(run.id), tier=tier)
            return False

        for score in scores:
            await self.create_criterion_score(
                db,
                run.id,
                criterion=score["criterion"],
                tier=score["tier"],
                score=score["score"],
                evidence=score["evidence"],
                passes=score["passes"],
            )

        self.append_errors(run, errors)
        fields: dict[str, Any] = {}
        if tier in TIER_TIMESTAMP_FIELDS:
            fields[TIER_TIMESTAMP_FIELDS[tier]] = utcnow()
        if overall_score is not None:
            fields["overall_score"] = _decimal(overall_score)
            fields["score_evidence"] = score_evidence

        await self.update_run(db, run, status, detail=detail, **fields)
        return True

    async def get_criterion_scores(
        self,
        db: AsyncSession,
        run_id: uuid.UUID,
    ) -> list[CriterionScore]:
        """All criterion scores of a run, tier by tier."""
        result = await db.execute(
            select(CriterionScore)
            .where(CriterionScore.run_id == run_id)
            .order_by(CriterionScore.tier, CriterionScore.criterion)
        )
        return list(result.scalars().all())

    async def latest_completed(
        self,
        db: AsyncSession,
        client_id: uuid.UUID,
        kind: RunKind,
    ) -> EffectivenessRun | None:
        """Most recent completed run for an entity, with its scores loaded."""
        result = await db.execute(
            select(EffectivenessRun)
            .options(selectinload(EffectivenessRun.criterion_scores))
            .where(
                EffectivenessRun.client_id == client_id,
                _kind_clause(kind),
                EffectivenessRun.status == RunStatus.COMPLETED.value,
            )
            .order_by(EffectivenessRun.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_attempt(
        self,
        db: AsyncSession,
        client_id: uuid.UUID,
        kind: RunKind,
    ) -> EffectivenessRun | None:
        """Most recent run for an entity regardless of status."""
        result = await db.execute(
            select(EffectivenessRun)
            .where(EffectivenessRun.client_id == client_id, _kind_clause(kind))
            .order_by(EffectivenessRun.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_stale_runs(
        self,
        db: AsyncSession,
        cutoff: datetime,
        client_id: uuid.UUID | None = None,
    ) -> list[EffectivenessRun]:
        """Non-terminal runs created before ``cutoff``, oldest first."""
        query = select(EffectivenessRun).where(
            EffectivenessRun.status.in_([s.value for s in ACTIVE_STATUSES]),
            EffectivenessRun.created_at < cutoff,
        )
        if client_id is not None:
            query = query.where(EffectivenessRun.client_id == client_id)
        result = await db.execute(query.order_by(EffectivenessRun.created_at))
        return list(result.scalars().all())

    async def fail_if_active(
        self,
        db: AsyncSession,
        run_id: uuid.UUID,
        detail: str,
        error: dict[str, Any] | None = None,
    ) -> bool:
        """
        Mark a run failed only if it is still non-terminal.

        The status check is part of the UPDATE, so a run that finished in
        the meantime is left alone.

        Returns:
            True if the run was changed
        """
        values: dict[str, Any] = {
            "status": RunStatus.FAILED.value,
            "progress_detail": detail,
            "updated_at": utcnow(),
        }
        if error is not None:
            run = await db.get(EffectivenessRun, run_id)
            if run is not None:
                values["error_details"] = [*(run.error_details or []), error]

        result = await db.execute(
            update(EffectivenessRun)
            .where(
                EffectivenessRun.id == run_id,
                EffectivenessRun.status.in_([s.value for s in ACTIVE_STATUSES]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def set_insights(
        self,
        db: AsyncSession,
        run: EffectivenessRun,
        insights: dict[str, Any],
    ) -> EffectivenessRun:
        """Store generated insights; the only write a terminal run accepts."""
        run.ai_insights = insights
        run.updated_at = utcnow()
        await db.flush()
        return run

    async def count_runs(self, db: AsyncSession, client_id: uuid.UUID) -> int:
        result = await db.execute(
            select(func.count())
            .select_from(EffectivenessRun)
            .where(EffectivenessRun.client_id == client_id)
        )
        return result.scalar_one()

    async def delete_runs(self, db: AsyncSession, client_id: uuid.UUID) -> int:
        """Delete every run of a client and their criterion scores."""
        run_ids = select(EffectivenessRun.id).where(EffectivenessRun.client_id == client_id)
        await db.execute(delete(CriterionScore).where(CriterionScore.run_id.in_(run_ids)))
        result = await db.execute(
            delete(EffectivenessRun).where(EffectivenessRun.client_id == client_id)
        )
        return result.rowcount


# Singleton instance
run_service = RunService()
