"""Tiered scoring for one URL.

Tier 1 runs the deterministic HTML checks, tier 2 the AI judgments
(concurrently, each under its own timeout), tier 3 the performance API.
Failures are contained per criterion: a failing criterion is simply
absent from the tier's results and reported as a tagged step error.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from api.metrics import record_fallback_score, record_incomplete_aggregation
from worker.effectiveness.errors import (
    AggregationError,
    ErrorCategory,
    StepError,
    describe_exception,
)
from worker.effectiveness.resilience import FAILURE_CATEGORIES, FailureMode
from worker.effectiveness.scorers import CriterionScorer, ScorerRegistry
from worker.effectiveness.types import (
    CRITERION_TIERS,
    TOTAL_CRITERIA,
    AggregateResult,
    Criterion,
    CriterionResult,
    ScoringConfig,
    ScoringContext,
)

logger = structlog.get_logger(__name__)


def fallback_error(result: CriterionResult) -> StepError:
    """Step error for a criterion that fell back, tagged by why the call failed."""
    mode = result.evidence.get("failure_mode")
    try:
        category = FAILURE_CATEGORIES[FailureMode(mode)]
    except ValueError:
        category = ErrorCategory.UNKNOWN
    last_error = result.evidence.get("last_error") or "Performance API fallback"
    return StepError(
        step="tier3",
        category=category,
        message=f"{mode or 'fallback'}: {last_error}",
        criterion=result.criterion.value,
        failure_mode=mode,
    )


@dataclass
class TierOutcome:
    """Results of one tier plus the errors of criteria that did not score."""

    tier: int
    results: list[CriterionResult] = field(default_factory=list)
    errors: list[StepError] = field(default_factory=list)

    @property
    def scores(self) -> dict[str, float]:
        return {r.criterion.value: r.score for r in self.results}


class TieredScorer:
    """Runs the three scoring tiers and the final aggregation."""

    def __init__(self, registry: ScorerRegistry):
        self.registry = registry

    def _missing_scorer_errors(self, tier: int, present: list[CriterionScorer]) -> list[StepError]:
        registered = {s.criterion for s in present}
        return [
            StepError(
                step=f"tier{tier}",
                category=ErrorCategory.UNKNOWN,
                message=f"No scorer registered for {criterion.value}",
                criterion=criterion.value,
            )
            for criterion, t in CRITERION_TIERS.items()
            if t == tier and criterion not in registered
        ]

    async def run_tier1_analysis(
        self,
        context: ScoringContext,
        config: ScoringConfig,
    ) -> TierOutcome:
        """Score the deterministic HTML criteria one after another."""
        scorers = self.registry.for_tier(1)
        outcome = TierOutcome(tier=1, errors=self._missing_scorer_errors(1, scorers))

        for scorer in scorers:
            try:
                result = await scorer.score(context, config)
            except Exception as e:
                logger.warning(
                    "criterion_scoring_failed",
                    tier=1,
                    criterion=scorer.criterion.value,
                    error=describe_exception(e),
                )
                outcome.errors.append(
                    StepError(
                        step="tier1",
                        category=ErrorCategory.PARSING_ERROR,
                        message=describe_exception(e),
                        criterion=scorer.criterion.value,
                    )
                )
                continue
            outcome.results.append(result)

        return outcome

    async def _score_with_timeout(
        self,
        scorer: CriterionScorer,
        context: ScoringContext,
        config: ScoringConfig,
    ) -> CriterionResult:
        try:
            return await asyncio.wait_for(
                scorer.score(context, config),
                timeout=config.tier2_timeout_seconds,
            )
        except TimeoutError as e:
            raise TimeoutError(
                f"AI judgment timed out after {config.tier2_timeout_seconds:g}s"
            ) from e

    async def run_tier2_analysis(
        self,
        context: ScoringContext,
        config: ScoringConfig,
        tier1: TierOutcome | None = None,
    ) -> TierOutcome:
        """
        Score the AI-judged criteria concurrently.

        Tier-1 scores, when given, are passed to the judge as context.
        """
        if tier1 is not None:
            context.prior_scores = {**context.prior_scores, **tier1.scores}

        scorers = self.registry.for_tier(2)
        outcome = TierOutcome(tier=2, errors=self._missing_scorer_errors(2, scorers))

        results = await asyncio.gather(
            *(self._score_with_timeout(s, context, config) for s in scorers),
            return_exceptions=True,
        )

        for scorer, result in zip(scorers, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                step_error = StepError.from_exception("tier2", result, scorer.criterion.value)
                if step_error.category in (ErrorCategory.UNKNOWN, ErrorCategory.PARSING_ERROR):
                    step_error.category = ErrorCategory.AI_API_ERROR
                logger.warning(
                    "criterion_scoring_failed",
                    tier=2,
                    criterion=scorer.criterion.value,
                    category=step_error.category.value,
                    error=step_error.message,
                )
                outcome.errors.append(step_error)
            else:
                outcome.results.append(result)

        return outcome

    async def run_tier3_analysis(
        self,
        context: ScoringContext,
        config: ScoringConfig,
    ) -> TierOutcome:
        """Score speed; a failing performance API yields a fallback score, not an error."""
        scorers = self.registry.for_tier(3)
        outcome = TierOutcome(tier=3, errors=self._missing_scorer_errors(3, scorers))

        for scorer in scorers:
            try:
                result = await scorer.score(context, config)
            except Exception as e:
                logger.warning(
                    "criterion_scoring_failed",
                    tier=3,
                    criterion=scorer.criterion.value,
                    error=describe_exception(e),
                )
                outcome.errors.append(StepError.from_exception("tier3", e, scorer.criterion.value))
                continue
            if result.is_fallback:
                record_fallback_score(result.criterion.value)
                outcome.errors.append(fallback_error(result))
            outcome.results.append(result)

        return outcome

    def aggregate_results(self, scores: list[CriterionResult]) -> AggregateResult:
        """
        Equal-weight mean of whichever criteria were scored.

        Raises:
            AggregationError: no scores at all
        """
        if not scores:
            raise AggregationError("No criterion scores to aggregate")

        by_criterion = {r.criterion: r for r in scores}
        overall = round(sum(r.score for r in by_criterion.values()) / len(by_criterion), 1)
        missing = [c.value for c in Criterion if c not in by_criterion]
        fallbacks = [r.criterion.value for r in by_criterion.values() if r.is_fallback]

        evidence = {
            "complete": not missing,
            "scored_criteria": len(by_criterion),
            "total_criteria": TOTAL_CRITERIA,
            "missing_criteria": missing,
            "fallback_criteria": fallbacks,
            "method": "equal_weight_mean",
        }

        if missing:
            record_incomplete_aggregation()
            logger.warning(
                "aggregation_incomplete",
                scored=len(by_criterion),
                total=TOTAL_CRITERIA,
                missing=missing,
            )

        return AggregateResult(overall_score=overall, evidence=evidence)
