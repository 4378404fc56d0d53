"""Effectiveness analysis endpoints."""

import uuid
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Annotated

import structlog
from fastapi import APIRouter, Query, Request, status
from fastapi.responses import StreamingResponse

from api.deps import DbSession, EngineDep, SettingsDep
from api.exceptions import NotFoundError
from api.schemas.effectiveness import (
    AttemptSummary,
    CriterionScoreRead,
    DeleteRunsResponse,
    EntityLatest,
    InsightsRead,
    LatestResultsResponse,
    ProgressRead,
    RefreshResponse,
    RunWithScores,
    SweepResponse,
)
from api.schemas.responses import SuccessResponse
from api.services import client_service, run_service
from worker.effectiveness.orchestrator import EntityResults

router = APIRouter(prefix="/effectiveness", tags=["effectiveness"])
admin_router = APIRouter(prefix="/effectiveness/admin", tags=["effectiveness-admin"])

logger = structlog.get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def _entity_latest(results: EntityResults) -> EntityLatest:
    return EntityLatest(
        kind=results.kind.label,
        competitor_id=results.kind.competitor_id,
        label=results.label,
        url=results.url,
        run=RunWithScores.model_validate(results.completed) if results.completed else None,
        latest_attempt=(
            AttemptSummary.model_validate(results.latest_attempt)
            if results.latest_attempt
            else None
        ),
        never_succeeded=results.never_succeeded,
        newer_attempt_failed=results.newer_attempt_failed,
        newer_attempt_in_progress=results.newer_attempt_in_progress,
    )


@router.post(
    "/refresh/{client_id}",
    response_model=SuccessResponse[RefreshResponse],
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start an effectiveness analysis",
)
async def refresh(
    client_id: uuid.UUID,
    engine: EngineDep,
    force: Annotated[bool, Query(description="Start even if an analysis is running")] = False,
) -> SuccessResponse[RefreshResponse]:
    """
    Start analysing the client's site and its competitors.

    Returns as soon as the client's run exists; processing continues in
    the background. Follow it with /progress/{run_id} or /stream/{client_id}.
    """
    result = await engine.orchestrator.start_analysis(client_id, force=force)
    return SuccessResponse(data=RefreshResponse(run_id=result.run_id, reused=result.reused))


@router.get(
    "/latest/{client_id}",
    response_model=SuccessResponse[LatestResultsResponse],
    summary="Latest completed results",
)
async def get_latest(
    client_id: uuid.UUID,
    engine: EngineDep,
) -> SuccessResponse[LatestResultsResponse]:
    """
    Most recent completed results for the client and each competitor.

    A newer failed or in-progress attempt never replaces a completed
    result; it is flagged on the entity instead.
    """
    latest = await engine.orchestrator.get_latest_results(client_id)
    return SuccessResponse(
        data=LatestResultsResponse(
            client_id=latest.client.id,
            client_name=latest.client.name,
            client=_entity_latest(latest.client_results),
            competitors=[_entity_latest(c) for c in latest.competitors],
        )
    )


@router.get(
    "/progress/{run_id}",
    response_model=SuccessResponse[ProgressRead],
    summary="Get run progress",
)
async def get_progress(
    run_id: uuid.UUID,
    engine: EngineDep,
) -> SuccessResponse[ProgressRead]:
    """Current progress of a run, from memory or the database."""
    record = await engine.orchestrator.get_progress(run_id)
    if record is None:
        raise NotFoundError("Run", str(run_id))
    return SuccessResponse(
        data=ProgressRead(
            run_id=record.run_id,
            client_id=record.client_id,
            competitor_id=record.competitor_id,
            status=record.status,
            progress=record.progress,
            overall_percent=record.overall_percent,
            message=record.detail,
            step=record.step,
            updated_at=record.updated_at,
            result=record.result,
        )
    )


@router.get(
    "/stream/{client_id}",
    summary="Stream analysis progress (SSE)",
    response_class=StreamingResponse,
)
async def stream_progress(
    client_id: uuid.UUID,
    request: Request,
    engine: EngineDep,
) -> StreamingResponse:
    """
    Stream progress of every run of a client using Server-Sent Events.

    The stream emits events in the format:
    ```
    event: progress
    data: {"runId": "...", "status": "tier1_complete", "overallPercent": 14, ...}

    event: heartbeat
    data: {}
    ```

    The first progress event replays the current state of the analysis,
    from the registry or else from the client's latest run. Only the end
    of the whole analysis is sent as `completed` or `error`; the stream
    closes then. Connections past their maximum lifetime get a `timeout`
    event and are closed.

    Raises:
        RateLimitError: Too many open streams for this client or in total
    """
    registry = engine.registry
    current = await engine.orchestrator.get_client_progress(client_id)
    subscription = registry.subscribe(client_id=str(client_id), fallback=current)

    async def event_generator() -> AsyncGenerator[str, None]:
        """Relay registry events until the channel closes or the client leaves."""
        try:
            async for event in subscription.events():
                if await request.is_disconnected():
                    break
                yield event.to_sse()
        finally:
            registry.unsubscribe(subscription)
            logger.debug("progress_stream_closed", client_id=str(client_id))

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get(
    "/evidence/{client_id}/{run_id}",
    response_model=SuccessResponse[list[CriterionScoreRead]],
    summary="Get criterion evidence",
)
async def get_evidence(
    client_id: uuid.UUID,
    run_id: uuid.UUID,
    db: DbSession,
) -> SuccessResponse[list[CriterionScoreRead]]:
    """Per-criterion scores and evidence of one run."""
    await run_service.get_run(db, run_id, client_id)
    scores = await run_service.get_criterion_scores(db, run_id)
    return SuccessResponse(data=[CriterionScoreRead.model_validate(s) for s in scores])


@router.get(
    "/insights/{client_id}/{run_id}",
    response_model=SuccessResponse[InsightsRead],
    summary="Get AI insights",
)
async def get_insights(
    client_id: uuid.UUID,
    run_id: uuid.UUID,
    db: DbSession,
) -> SuccessResponse[InsightsRead]:
    """Stored insights of a client run, if any were generated."""
    run = await run_service.get_run(db, run_id, client_id)
    return SuccessResponse(data=InsightsRead(run_id=run.id, insights=run.ai_insights))


@router.post(
    "/insights/{client_id}/{run_id}",
    response_model=SuccessResponse[InsightsRead],
    summary="Regenerate AI insights",
)
async def regenerate_insights(
    client_id: uuid.UUID,
    run_id: uuid.UUID,
    engine: EngineDep,
) -> SuccessResponse[InsightsRead]:
    """Generate insights for a completed client run, replacing stored ones."""
    insights = await engine.orchestrator.generate_insights(client_id, run_id)
    return SuccessResponse(data=InsightsRead(run_id=run_id, insights=insights))


# Admin endpoints


@admin_router.post(
    "/reap",
    response_model=SuccessResponse[SweepResponse],
    summary="Fail stale runs",
)
async def reap_stale_runs(
    engine: EngineDep,
    settings: SettingsDep,
    dry_run: Annotated[bool, Query(description="Report without changing anything")] = False,
    stale_after_hours: Annotated[float | None, Query(gt=0)] = None,
    client_id: Annotated[uuid.UUID | None, Query()] = None,
) -> SuccessResponse[SweepResponse]:
    """Mark runs stuck in a non-terminal status as failed."""
    hours = stale_after_hours or settings.stale_run_hours
    result = await engine.reaper.sweep(
        timedelta(hours=hours),
        dry_run=dry_run,
        client_id=client_id,
    )
    return SuccessResponse(data=SweepResponse(**result.to_dict()))


@admin_router.delete(
    "/runs/{client_id}",
    response_model=SuccessResponse[DeleteRunsResponse],
    summary="Delete a client's runs",
)
async def delete_client_runs(
    client_id: uuid.UUID,
    db: DbSession,
) -> SuccessResponse[DeleteRunsResponse]:
    """Delete every run and criterion score of a client."""
    await client_service.get_client(db, client_id)
    deleted = await run_service.delete_runs(db, client_id)
    logger.info("client_runs_deleted", client_id=str(client_id), deleted_runs=deleted)
    return SuccessResponse(data=DeleteRunsResponse(client_id=client_id, deleted_runs=deleted))
