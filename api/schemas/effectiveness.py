"""Effectiveness run schemas."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class RefreshResponse(BaseModel):
    """Response to a refresh request."""

    run_id: uuid.UUID
    reused: bool = Field(
        default=False,
        description="True when an analysis was already running and its run is returned",
    )


class CriterionScoreRead(BaseModel):
    """One scored criterion."""

    criterion: str
    tier: int
    score: float
    evidence: dict[str, Any]
    passes: dict[str, list[str]]
    created_at: datetime

    class Config:
        from_attributes = True


class RunRead(BaseModel):
    """Schema for reading a run."""

    id: uuid.UUID
    client_id: uuid.UUID
    competitor_id: uuid.UUID | None
    url: str
    status: str
    progress: int
    progress_detail: str | None
    overall_score: float | None
    score_evidence: dict[str, Any] | None
    screenshot_url: str | None
    screenshot_error: str | None
    full_page_screenshot_url: str | None
    full_page_screenshot_error: str | None
    error_details: list[dict[str, Any]] | None
    tier1_completed_at: datetime | None
    tier2_completed_at: datetime | None
    tier3_completed_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RunWithScores(RunRead):
    """Run with its criterion scores and insights."""

    criterion_scores: list[CriterionScoreRead] = Field(default_factory=list)
    ai_insights: dict[str, Any] | None = None


class AttemptSummary(BaseModel):
    """Most recent attempt of an entity, whatever its status."""

    id: uuid.UUID
    status: str
    progress: int
    progress_detail: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class EntityLatest(BaseModel):
    """Latest results of the client or one competitor."""

    kind: str = Field(description="client or competitor")
    competitor_id: uuid.UUID | None = None
    label: str
    url: str
    run: RunWithScores | None = Field(
        default=None, description="Most recent completed run, if any"
    )
    latest_attempt: AttemptSummary | None = None
    never_succeeded: bool
    newer_attempt_failed: bool
    newer_attempt_in_progress: bool


class LatestResultsResponse(BaseModel):
    """Latest completed results for a client and its competitors."""

    client_id: uuid.UUID
    client_name: str
    client: EntityLatest
    competitors: list[EntityLatest] = Field(default_factory=list)


class ProgressRead(BaseModel):
    """Progress of one run."""

    run_id: str
    client_id: str
    competitor_id: str | None = None
    status: str
    progress: int
    overall_percent: int
    message: str | None = None
    step: str | None = None
    updated_at: datetime
    result: dict[str, Any] | None = None

    class Config:
        from_attributes = True


class InsightsRead(BaseModel):
    """Stored AI insights of a client run."""

    run_id: uuid.UUID
    insights: dict[str, Any] | None


class SweepResponse(BaseModel):
    """Result of a stale run sweep."""

    dry_run: bool
    stale_after_hours: float
    total_stale_runs: int
    cleaned_runs: int
    stale_pending_runs: int
    stale_runs: list[dict[str, Any]] = Field(default_factory=list)
    errors: list[dict[str, str]] = Field(default_factory=list)


class DeleteRunsResponse(BaseModel):
    """Result of an administrative run cleanup."""

    client_id: uuid.UUID
    deleted_runs: int
