"""Effectiveness run and criterion score models."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from api.database import Base
from api.models.base import JSONVariant, utcnow

if TYPE_CHECKING:
    from api.models.client import Client, Competitor


class RunStatus(StrEnum):
    """Run status states, in pipeline order."""

    PENDING = "pending"
    INITIALIZING = "initializing"
    SCRAPING = "scraping"
    TIER1_ANALYZING = "tier1_analyzing"
    TIER1_COMPLETE = "tier1_complete"
    TIER2_ANALYZING = "tier2_analyzing"
    TIER2_COMPLETE = "tier2_complete"
    TIER3_ANALYZING = "tier3_analyzing"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


PIPELINE_ORDER: tuple[RunStatus, ...] = (
    RunStatus.PENDING,
    RunStatus.INITIALIZING,
    RunStatus.SCRAPING,
    RunStatus.TIER1_ANALYZING,
    RunStatus.TIER1_COMPLETE,
    RunStatus.TIER2_ANALYZING,
    RunStatus.TIER2_COMPLETE,
    RunStatus.TIER3_ANALYZING,
    RunStatus.ANALYZING,
    RunStatus.COMPLETED,
)

TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})
ACTIVE_STATUSES = tuple(s for s in PIPELINE_ORDER if s not in TERMINAL_STATUSES)

# Run-level progress percentage reached on entering each status
STATUS_PROGRESS: dict[RunStatus, int] = {
    RunStatus.PENDING: 0,
    RunStatus.INITIALIZING: 5,
    RunStatus.SCRAPING: 10,
    RunStatus.TIER1_ANALYZING: 30,
    RunStatus.TIER1_COMPLETE: 40,
    RunStatus.TIER2_ANALYZING: 45,
    RunStatus.TIER2_COMPLETE: 70,
    RunStatus.TIER3_ANALYZING: 75,
    RunStatus.ANALYZING: 95,
    RunStatus.COMPLETED: 100,
}


def is_terminal(status: str) -> bool:
    """Check if a status is terminal (completed or failed)."""
    return status in TERMINAL_STATUSES


def can_transition(current: str, new: str) -> bool:
    """
    Check whether a run may move from ``current`` to ``new``.

    Transitions only move forward through the pipeline. ``failed`` is
    reachable from any non-terminal status, and terminal statuses accept
    nothing. Re-writing the current non-terminal status is allowed so
    detail updates within a phase are not rejected.
    """
    if is_terminal(current):
        return False
    if new == RunStatus.FAILED:
        return True
    return PIPELINE_ORDER.index(RunStatus(new)) >= PIPELINE_ORDER.index(RunStatus(current))


class EffectivenessRun(Base):
    """One scoring attempt for one entity (the client site or one competitor)."""

    __tablename__ = "effectiveness_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Null for the client's own run
    competitor_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("competitors.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    url: Mapped[str] = mapped_column(String(2048), nullable=False)

    # State
    status: Mapped[str] = mapped_column(
        String(32),
        default=RunStatus.PENDING.value,
        nullable=False,
        index=True,
    )
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    overall_score: Mapped[Decimal | None] = mapped_column(Numeric(4, 2), nullable=True)
    score_evidence: Mapped[dict | None] = mapped_column(JSONVariant, nullable=True)
    # Example score_evidence:
    # {
    #   "complete": false,
    #   "scored_criteria": 7,
    #   "missing_criteria": ["brand_story"],
    #   "fallback_criteria": ["speed"]
    # }

    # Artifacts (independent of each other)
    screenshot_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    screenshot_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    full_page_screenshot_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    full_page_screenshot_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Tagged step failures: [{"step", "category", "message", "criterion"?}]
    error_details: Mapped[list | None] = mapped_column(JSONVariant, nullable=True)

    # Generated after completion; absence does not invalidate the run
    ai_insights: Mapped[dict | None] = mapped_column(JSONVariant, nullable=True)

    # Timing
    tier1_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    tier2_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    tier3_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    # Relationships
    client: Mapped[Client] = relationship("Client", back_populates="runs")
    competitor: Mapped[Competitor | None] = relationship("Competitor")
    criterion_scores: Mapped[list[CriterionScore]] = relationship(
        "CriterionScore",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="CriterionScore.tier",
    )

    @property
    def is_terminal(self) -> bool:
        """Check if the run reached completed or failed."""
        return is_terminal(self.status)

    def __repr__(self) -> str:
        return f"<EffectivenessRun {self.id} status={self.status}>"


class CriterionScore(Base):
    """One scored criterion belonging to exactly one run."""

    __tablename__ = "criterion_scores"
    __table_args__ = (UniqueConstraint("run_id", "criterion", name="uq_criterion_scores_run"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("effectiveness_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    criterion: Mapped[str] = mapped_column(String(32), nullable=False)
    tier: Mapped[int] = mapped_column(Integer, nullable=False)
    score: Mapped[Decimal] = mapped_column(Numeric(4, 2), nullable=False)
    evidence: Mapped[dict] = mapped_column(JSONVariant, nullable=False, default=dict)
    passes: Mapped[dict] = mapped_column(JSONVariant, nullable=False, default=dict)
    # Example passes: {"passed": ["has_title"], "failed": ["has_meta_description"]}

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    run: Mapped[EffectivenessRun] = relationship(
        "EffectivenessRun", back_populates="criterion_scores"
    )

    def __repr__(self) -> str:
        return f"<CriterionScore {self.criterion}={self.score}>"
