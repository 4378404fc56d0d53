"""Run orchestration for effectiveness analyses.

One analysis covers the client's site and then its competitors. Each
entity gets its own run row and goes through the same phases:

    initializing -> scraping -> tier 1 -> tier 2 -> tier 3 -> aggregation

Every phase transition is written to the database first and then pushed
to the progress registry. A failure that escapes tier containment fails
that one run only; sibling entities keep going.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.exceptions import ConflictError, RateLimitError, ValidationError
from api.logging import bind_run_context
from api.metrics import record_run_finished, record_run_started, record_step_error
from api.models import Client, Competitor, EffectivenessRun, RunStatus
from api.models.base import ensure_utc, utcnow
from api.services import ClientRun, CompetitorRun, RunKind, client_service, run_service
from worker.effectiveness.collector import ParallelDataCollector
from worker.effectiveness.errors import ErrorCategory, StepError, describe_exception
from worker.effectiveness.insights import EntityScores, InsightsProvider
from worker.effectiveness.progress import (
    AnalysisTracker,
    EntityProgressSink,
    ProgressRecord,
    ProgressRegistry,
)
from worker.effectiveness.tiers import TierOutcome, TieredScorer
from worker.effectiveness.types import (
    CollectorConfig,
    CriterionResult,
    DataBundle,
    ScoringConfig,
    ScoringContext,
)

if TYPE_CHECKING:
    from api.config import Settings

logger = structlog.get_logger(__name__)


@dataclass
class OrchestratorConfig:
    """Fan-out limits and timeouts for one analysis."""

    competitor_concurrency: int = 2
    max_competitors: int = 5
    refresh_cooldown_hours: float = 0.0
    stale_run_hours: float = 2.0
    insights_timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> OrchestratorConfig:
        return cls(
            competitor_concurrency=settings.competitor_concurrency,
            max_competitors=settings.max_competitors,
            refresh_cooldown_hours=settings.refresh_cooldown_hours,
            stale_run_hours=settings.stale_run_hours,
            insights_timeout_seconds=settings.insights_timeout_seconds,
        )


@dataclass
class StartResult:
    """Outcome of start_analysis."""

    run_id: uuid.UUID
    reused: bool = False


@dataclass
class EntityOutcome:
    """How one entity's run ended."""

    run_id: uuid.UUID | None
    kind: RunKind
    status: RunStatus
    overall_score: float | None = None
    error: str | None = None
    result: dict[str, Any] | None = None

    @property
    def completed(self) -> bool:
        return self.status == RunStatus.COMPLETED


@dataclass
class EntityResults:
    """Latest completed run of one entity plus its most recent attempt."""

    kind: RunKind
    label: str
    url: str
    completed: EffectivenessRun | None = None
    latest_attempt: EffectivenessRun | None = None

    @property
    def never_succeeded(self) -> bool:
        return self.completed is None

    def _newer_attempt(self) -> EffectivenessRun | None:
        if self.latest_attempt is None:
            return None
        if self.completed is not None and self.latest_attempt.id == self.completed.id:
            return None
        return self.latest_attempt

    @property
    def newer_attempt_failed(self) -> bool:
        newer = self._newer_attempt()
        return newer is not None and newer.status == RunStatus.FAILED

    @property
    def newer_attempt_in_progress(self) -> bool:
        newer = self._newer_attempt()
        return newer is not None and not newer.is_terminal


@dataclass
class LatestResults:
    """Result of get_latest_results."""

    client: Client
    client_results: EntityResults
    competitors: list[EntityResults] = field(default_factory=list)


class RunNoLongerActive(Exception):
    """The run reached a terminal state outside this task (e.g. reaped)."""


@dataclass
class _Entity:
    """In-flight state of one entity's run."""

    run_id: uuid.UUID
    client_id: uuid.UUID
    kind: RunKind
    url: str
    sink: EntityProgressSink
    phase: RunStatus = RunStatus.PENDING
    results: list[CriterionResult] = field(default_factory=list)
    final_payload: dict[str, Any] | None = None


def _phase_step(status: RunStatus) -> str:
    return {
        RunStatus.PENDING: "initializing",
        RunStatus.INITIALIZING: "initializing",
        RunStatus.SCRAPING: "data_collection",
        RunStatus.TIER1_ANALYZING: "tier1",
        RunStatus.TIER1_COMPLETE: "tier1",
        RunStatus.TIER2_ANALYZING: "tier2",
        RunStatus.TIER2_COMPLETE: "tier2",
        RunStatus.TIER3_ANALYZING: "tier3",
        RunStatus.ANALYZING: "aggregation",
    }.get(status, status.value)


def _record_from_run(run: EffectivenessRun, final: bool = False) -> ProgressRecord:
    """Best-effort progress record rebuilt from a persisted run."""
    return ProgressRecord(
        run_id=str(run.id),
        client_id=str(run.client_id),
        competitor_id=str(run.competitor_id) if run.competitor_id else None,
        status=run.status,
        progress=run.progress,
        detail=run.progress_detail,
        step=run.status,
        overall_percent=run.progress,
        updated_at=ensure_utc(run.updated_at),
        final=final,
    )


def collection_errors(bundle: DataBundle) -> list[StepError]:
    """Tagged step errors for every degraded source of a bundle."""
    errors = []
    for source, message in bundle.errors.items():
        category = bundle.error_categories.get(source, ErrorCategory.UNKNOWN.value)
        errors.append(
            StepError(
                step=f"collect_{source}",
                category=ErrorCategory(category),
                message=message,
            )
        )
    return errors


def entity_scores(run: EffectivenessRun, label: str) -> EntityScores:
    """Scores of a completed run in the shape the insights prompt expects."""
    return EntityScores(
        label=label,
        url=run.url,
        overall_score=float(run.overall_score) if run.overall_score is not None else None,
        criteria={cs.criterion: float(cs.score) for cs in run.criterion_scores},
        failed_checks={
            cs.criterion: list((cs.passes or {}).get("failed", [])) for cs in run.criterion_scores
        },
    )


class RunOrchestrator:
    """Owns the lifecycle of analysis requests."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        collector: ParallelDataCollector,
        scorer: TieredScorer,
        registry: ProgressRegistry,
        insights: InsightsProvider | None = None,
        config: OrchestratorConfig | None = None,
        scoring_config: ScoringConfig | None = None,
        collector_config: CollectorConfig | None = None,
    ):
        self.session_maker = session_maker
        self.collector = collector
        self.scorer = scorer
        self.registry = registry
        self.insights = insights
        self.config = config or OrchestratorConfig()
        self.scoring_config = scoring_config or ScoringConfig()
        self.collector_config = collector_config or CollectorConfig()
        self._tasks: set[asyncio.Task] = set()
        self._start_locks: dict[uuid.UUID, asyncio.Lock] = {}

    # Entry points

    async def start_analysis(self, client_id: uuid.UUID, force: bool = False) -> StartResult:
        """
        Create the client's run and process the analysis in the background.

        Without ``force`` an existing non-stale pending run is returned
        instead of starting a second orchestration for the same client.
        Concurrent calls for one client are serialized from the pending-run
        check through the commit of the new run.

        Raises:
            NotFoundError: unknown client
            RateLimitError: refresh cooldown still running
        """
        lock = self._start_locks.setdefault(client_id, asyncio.Lock())
        async with lock, self.session_maker() as db:
            client = await client_service.get_client(db, client_id)

            if not force:
                stale_cutoff = utcnow() - timedelta(hours=self.config.stale_run_hours)
                pending = await run_service.get_pending_run(
                    db, client_id, ClientRun(), newer_than=stale_cutoff
                )
                if pending is not None:
                    logger.info(
                        "analysis_already_running",
                        client_id=str(client_id),
                        run_id=str(pending.id),
                        status=pending.status,
                    )
                    return StartResult(run_id=pending.id, reused=True)

                await self._check_cooldown(db, client_id)

            competitors = list(client.competitors)[: self.config.max_competitors]
            run = await run_service.create_run(db, client_id, client.website_url, ClientRun())
            await db.commit()

        tracker = AnalysisTracker(self.registry, str(client_id), len(competitors))
        sink = tracker.sink_for(str(run.id))
        sink.report(RunStatus.PENDING, "Queued")

        task = asyncio.create_task(
            self._run_analysis(client, run.id, competitors, tracker, sink),
            name=f"effectiveness-{client_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            "analysis_started",
            client_id=str(client_id),
            run_id=str(run.id),
            competitors=len(competitors),
            force=force,
        )
        return StartResult(run_id=run.id)

    async def _check_cooldown(self, db: AsyncSession, client_id: uuid.UUID) -> None:
        if self.config.refresh_cooldown_hours <= 0:
            return
        latest = await run_service.latest_completed(db, client_id, ClientRun())
        if latest is None or latest.completed_at is None:
            return
        ready_at = ensure_utc(latest.completed_at) + timedelta(
            hours=self.config.refresh_cooldown_hours
        )
        remaining = (ready_at - utcnow()).total_seconds()
        if remaining > 0:
            raise RateLimitError(
                "Analysis was refreshed recently; use force to override",
                retry_after=int(remaining) + 1,
            )

    async def get_progress(self, run_id: uuid.UUID) -> ProgressRecord | None:
        """Registry record if present, else a best-effort record from the database."""
        record = self.registry.get(str(run_id))
        if record is not None:
            return record

        async with self.session_maker() as db:
            run = await run_service.find_run(db, run_id)
        if run is None:
            return None
        return _record_from_run(run)

    async def get_client_progress(self, client_id: uuid.UUID) -> ProgressRecord | None:
        """
        Current state of the client's analysis for a new client-channel
        subscriber: the most recent registry record, else one rebuilt from
        the client's latest run.
        """
        record = self.registry.latest_for_client(str(client_id))
        if record is not None:
            return record

        async with self.session_maker() as db:
            run = await run_service.latest_attempt(db, client_id, ClientRun())
        if run is None:
            return None
        # With nothing live in the registry, a terminal client run ended its analysis
        return _record_from_run(run, final=run.is_terminal)

    async def get_latest_results(self, client_id: uuid.UUID) -> LatestResults:
        """
        Most recent completed run of the client and of each competitor.

        In-progress or failed runs never shadow an older completed one;
        they only show up as the entity's latest attempt.

        Raises:
            NotFoundError: unknown client
        """
        async with self.session_maker() as db:
            client = await client_service.get_client(db, client_id)
            client_results = await self._entity_results(
                db, client_id, ClientRun(), client.name, client.website_url
            )
            competitors = []
            for competitor in client.competitors:
                competitors.append(
                    await self._entity_results(
                        db,
                        client_id,
                        CompetitorRun(competitor.id),
                        competitor.label,
                        competitor.url,
                    )
                )
        return LatestResults(client=client, client_results=client_results, competitors=competitors)

    async def _entity_results(
        self,
        db: AsyncSession,
        client_id: uuid.UUID,
        kind: RunKind,
        label: str,
        url: str,
    ) -> EntityResults:
        return EntityResults(
            kind=kind,
            label=label,
            url=url,
            completed=await run_service.latest_completed(db, client_id, kind),
            latest_attempt=await run_service.latest_attempt(db, client_id, kind),
        )

    async def generate_insights(
        self,
        client_id: uuid.UUID,
        run_id: uuid.UUID,
    ) -> dict[str, Any]:
        """
        Generate and store insights for a completed client run.

        Raises:
            NotFoundError: unknown client or run
            ConflictError: the run is not a completed client run
            ValidationError: no insights provider is configured
        """
        if self.insights is None:
            raise ValidationError("AI insights are not configured")

        async with self.session_maker() as db:
            client = await client_service.get_client(db, client_id)
            run = await run_service.get_run(db, run_id, client_id)
            if run.competitor_id is not None or run.status != RunStatus.COMPLETED:
                raise ConflictError(
                    f"Insights require a completed client run (run {run_id} is {run.status})"
                )

            competitors = []
            for competitor in client.competitors:
                latest = await run_service.latest_completed(
                    db, client_id, CompetitorRun(competitor.id)
                )
                if latest is not None:
                    competitors.append(entity_scores(latest, competitor.label))

            insights = await asyncio.wait_for(
                self.insights.generate(entity_scores(run, client.name), competitors),
                timeout=self.config.insights_timeout_seconds,
            )
            await run_service.set_insights(db, run, insights)
            await db.commit()
        return insights

    # Background processing

    async def _run_analysis(
        self,
        client: Client,
        run_id: uuid.UUID,
        competitors: list[Competitor],
        tracker: AnalysisTracker,
        client_sink: EntityProgressSink,
    ) -> None:
        try:
            client_entity = _Entity(
                run_id=run_id,
                client_id=client.id,
                kind=ClientRun(),
                url=client.website_url,
                sink=client_sink,
            )
            client_outcome = await self._process_entity(client_entity)

            if competitors:
                await self._process_competitors(client.id, competitors, tracker)

            if client_outcome.completed:
                await self._insights_step(client.id, run_id)
            tracker.mark_insights_done()
            client_sink.report(
                client_outcome.status,
                "Analysis complete" if client_outcome.completed else client_outcome.error,
                step="analysis_complete",
                result=client_outcome.result,
                final=True,
            )
        except Exception as e:
            # Per-entity failures are contained below; this only catches bugs in the fan-out
            logger.exception(
                "analysis_crashed", client_id=str(client.id), error=describe_exception(e)
            )
        finally:
            self.registry.close_client_channel(str(client.id))

    async def _process_competitors(
        self,
        client_id: uuid.UUID,
        competitors: list[Competitor],
        tracker: AnalysisTracker,
    ) -> list[EntityOutcome]:
        """Process competitors, at most ``competitor_concurrency`` at a time."""
        semaphore = asyncio.Semaphore(max(1, self.config.competitor_concurrency))

        async def process(competitor: Competitor) -> EntityOutcome:
            async with semaphore:
                return await self._process_competitor(client_id, competitor, tracker)

        return list(await asyncio.gather(*(process(c) for c in competitors)))

    async def _process_competitor(
        self,
        client_id: uuid.UUID,
        competitor: Competitor,
        tracker: AnalysisTracker,
    ) -> EntityOutcome:
        kind = CompetitorRun(competitor.id)
        try:
            async with self.session_maker() as db:
                run = await run_service.create_run(db, client_id, competitor.url, kind)
                await db.commit()
        except Exception as e:
            logger.error(
                "competitor_run_create_failed",
                client_id=str(client_id),
                competitor_id=str(competitor.id),
                error=describe_exception(e),
            )
            record_step_error(ErrorCategory.DATABASE_ERROR.value, "create_run")
            return EntityOutcome(run_id=None, kind=kind, status=RunStatus.FAILED, error=str(e))

        entity = _Entity(
            run_id=run.id,
            client_id=client_id,
            kind=kind,
            url=competitor.url,
            sink=tracker.sink_for(str(run.id), str(competitor.id)),
        )
        return await self._process_entity(entity)

    async def _insights_step(self, client_id: uuid.UUID, run_id: uuid.UUID) -> None:
        """Best-effort insights; failure never changes the run's status."""
        if self.insights is None:
            return
        try:
            await self.generate_insights(client_id, run_id)
        except Exception as e:
            error = StepError.from_exception("insights", e)
            if error.category in (ErrorCategory.UNKNOWN, ErrorCategory.PARSING_ERROR):
                error.category = ErrorCategory.AI_API_ERROR
            record_step_error(error.category.value, error.step)
            logger.warning(
                "insights_generation_failed",
                client_id=str(client_id),
                run_id=str(run_id),
                category=error.category.value,
                error=error.message,
            )

    async def _process_entity(self, entity: _Entity) -> EntityOutcome:
        """Run every phase for one entity; never raises for run failures."""
        kind_label = entity.kind.label
        competitor_id = str(entity.kind.competitor_id) if entity.kind.competitor_id else None
        bind_run_context(str(entity.run_id), str(entity.client_id), competitor_id)
        record_run_started(kind_label)
        start = time.perf_counter()

        try:
            overall = await self._score_entity(entity)
        except RunNoLongerActive as e:
            logger.warning("run_no_longer_active", run_id=str(entity.run_id), status=str(e))
            record_run_finished(kind_label, False, time.perf_counter() - start)
            return EntityOutcome(
                run_id=entity.run_id, kind=entity.kind, status=RunStatus.FAILED, error=str(e)
            )
        except Exception as e:
            error = StepError.from_exception(_phase_step(entity.phase), e)
            logger.error(
                "run_failed",
                run_id=str(entity.run_id),
                kind=kind_label,
                phase=entity.phase.value,
                category=error.category.value,
                error=error.message,
            )
            await self._fail_run(entity, error)
            record_run_finished(kind_label, False, time.perf_counter() - start)
            return EntityOutcome(
                run_id=entity.run_id,
                kind=entity.kind,
                status=RunStatus.FAILED,
                error=error.message,
            )

        record_run_finished(kind_label, True, time.perf_counter() - start)
        logger.info(
            "run_completed", run_id=str(entity.run_id), kind=kind_label, overall_score=overall
        )
        return EntityOutcome(
            run_id=entity.run_id,
            kind=entity.kind,
            status=RunStatus.COMPLETED,
            overall_score=overall,
            result=entity.final_payload,
        )

    async def _score_entity(self, entity: _Entity) -> float:
        await self._transition(entity, RunStatus.INITIALIZING, "Initializing analysis")
        await self._transition(entity, RunStatus.SCRAPING, f"Collecting page data for {entity.url}")

        bundle = await self.collector.collect_all_data(entity.url, self.collector_config)
        sources_ok = 5 - len(bundle.errors)
        await self._transition(
            entity,
            RunStatus.TIER1_ANALYZING,
            f"Data collected ({sources_ok}/5 sources); running HTML checks",
            errors=collection_errors(bundle),
            screenshot_url=bundle.screenshot_url,
            screenshot_error=bundle.screenshot_error,
            full_page_screenshot_url=bundle.full_page_screenshot_url,
            full_page_screenshot_error=bundle.full_page_screenshot_error,
        )

        context = ScoringContext.from_bundle(bundle)
        tier1 = await self.scorer.run_tier1_analysis(context, self.scoring_config)
        await self._write_tier(entity, tier1, RunStatus.TIER1_COMPLETE)

        await self._transition(entity, RunStatus.TIER2_ANALYZING, "Running AI judgments")
        tier2 = await self.scorer.run_tier2_analysis(context, self.scoring_config, tier1)
        await self._write_tier(entity, tier2, RunStatus.TIER2_COMPLETE)

        await self._transition(entity, RunStatus.TIER3_ANALYZING, "Measuring site performance")
        tier3 = await self.scorer.run_tier3_analysis(context, self.scoring_config)

        await self._transition(entity, RunStatus.ANALYZING, "Aggregating scores")
        aggregate = self.scorer.aggregate_results([*entity.results, *tier3.results])
        await self._write_tier(
            entity,
            tier3,
            RunStatus.COMPLETED,
            overall_score=aggregate.overall_score,
            score_evidence=aggregate.evidence,
        )
        return aggregate.overall_score

    async def _transition(
        self,
        entity: _Entity,
        status: RunStatus,
        detail: str,
        *,
        errors: list[StepError] | None = None,
        **fields: Any,
    ) -> None:
        """Persist a phase transition, then push it to the registry."""
        async with self.session_maker() as db:
            run = await run_service.get_run(db, entity.run_id, for_update=True)
            if run.is_terminal:
                raise RunNoLongerActive(run.status)
            run_service.append_errors(run, [e.to_dict() for e in errors or ()])
            await run_service.update_run(db, run, status, detail=detail, **fields)
            await db.commit()

        for error in errors or ():
            record_step_error(error.category.value, error.step)
        entity.phase = status
        entity.sink.report(status, detail, step=_phase_step(status))

    async def _write_tier(
        self,
        entity: _Entity,
        outcome: TierOutcome,
        status: RunStatus,
        *,
        overall_score: float | None = None,
        score_evidence: dict[str, Any] | None = None,
    ) -> None:
        """Write a tier's scores and the run update in one transaction."""
        if overall_score is not None:
            detail = f"Analysis complete: overall score {overall_score}"
        else:
            detail = (
                f"Tier {outcome.tier} complete: {len(outcome.results)} criteria scored"
                + (f", {len(outcome.errors)} failed" if outcome.errors else "")
            )

        async with self.session_maker() as db:
            run = await run_service.get_run(db, entity.run_id, for_update=True)
            written = await run_service.record_tier_scores(
                db,
                run,
                outcome.tier,
                [r.to_dict() for r in outcome.results],
                status,
                detail=detail,
                errors=[e.to_dict() for e in outcome.errors],
                overall_score=overall_score,
                score_evidence=score_evidence,
            )
            if not written:
                raise RunNoLongerActive(run.status)
            await db.commit()
            screenshot_url = run.screenshot_url

        for error in outcome.errors:
            record_step_error(error.category.value, error.step)
        entity.results.extend(outcome.results)
        entity.phase = status

        result = None
        if status == RunStatus.COMPLETED:
            result = {
                "overallScore": overall_score,
                "criteria": {r.criterion.value: r.score for r in entity.results},
                "complete": bool(score_evidence and score_evidence.get("complete")),
                "fallbackCriteria": [r.criterion.value for r in entity.results if r.is_fallback],
                "screenshotUrl": screenshot_url,
            }
            entity.final_payload = result
        entity.sink.report(status, detail, step=_phase_step(status), result=result)

    async def _fail_run(self, entity: _Entity, error: StepError) -> None:
        """Record a run as failed with the causing message."""
        detail = f"Failed during {error.step}: {error.message}"
        try:
            async with self.session_maker() as db:
                changed = await run_service.fail_if_active(
                    db, entity.run_id, detail, error=error.to_dict()
                )
                await db.commit()
        except Exception as e:
            # The reaper fails the row later; the registry still reports the failure now
            logger.error(
                "run_fail_write_failed",
                run_id=str(entity.run_id),
                error=describe_exception(e),
            )
            changed = True
        record_step_error(error.category.value, error.step)
        if changed:
            entity.sink.report(RunStatus.FAILED, detail, step=error.step)

    # Lifecycle

    @property
    def active_analyses(self) -> int:
        return len(self._tasks)

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait for every background analysis to finish."""
        if self._tasks:
            await asyncio.wait_for(
                asyncio.gather(*list(self._tasks), return_exceptions=True),
                timeout=timeout,
            )

    async def shutdown(self) -> None:
        """Cancel in-flight analyses; the reaper fails their runs later."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.registry.stop()
