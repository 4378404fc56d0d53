"""Criterion scorers and the registry that maps criteria to them.

Tier 1 scorers are deterministic HTML checks, tier 2 scorers delegate to
an AI judge, tier 3 (speed) goes through the resilient API client.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Protocol

import structlog

from worker.effectiveness.criteria import (
    TIER1_CHECKS,
    build_text_context,
    extract_page_text,
    neutral_result,
)
from worker.effectiveness.judge import AiJudge
from worker.effectiveness.pagespeed import PerformanceApi, PerformanceMeasurement
from worker.effectiveness.resilience import (
    ApiCallResult,
    FailureMode,
    ResilientApiClient,
    RetryPolicy,
)
from worker.effectiveness.types import (
    TIER_CRITERIA,
    Criterion,
    CriterionResult,
    ScoringConfig,
    ScoringContext,
    WebVitals,
)

logger = structlog.get_logger(__name__)


class CriterionScorer(Protocol):
    """Scores one criterion from a scoring context."""

    criterion: Criterion

    async def score(self, context: ScoringContext, config: ScoringConfig) -> CriterionResult: ...


class HtmlCriterionScorer:
    """Tier-1 scorer wrapping a deterministic HTML check."""

    def __init__(
        self,
        criterion: Criterion,
        check: Callable[[ScoringContext, ScoringConfig], CriterionResult],
    ):
        self.criterion = criterion
        self._check = check

    async def score(self, context: ScoringContext, config: ScoringConfig) -> CriterionResult:
        if not context.html:
            return neutral_result(self.criterion, config, "no_html")
        return self._check(context, config)


class AiCriterionScorer:
    """Tier-2 scorer delegating to an AiJudge."""

    def __init__(self, criterion: Criterion, judge: AiJudge):
        self.criterion = criterion
        self.judge = judge

    async def score(self, context: ScoringContext, config: ScoringConfig) -> CriterionResult:
        if not context.html and not context.screenshot_url:
            return neutral_result(self.criterion, config, "no_html_or_screenshot")

        page = extract_page_text(context.html or "", max_chars=config.max_text_chars)
        text_context = build_text_context(self.criterion, page, context.prior_scores)
        judgment = await self.judge.classify(
            self.criterion,
            text_context,
            image_context=context.screenshot_url,
        )

        evidence = dict(judgment.evidence)
        evidence["mode"] = "vision" if context.screenshot_url else "text_only"
        evidence["html_quality"] = context.html_quality.value
        return CriterionResult(
            criterion=self.criterion,
            score=judgment.score,
            evidence=evidence,
            passed=[name for name, ok in judgment.checks.items() if ok],
            failed=[name for name, ok in judgment.checks.items() if not ok],
        )


def speed_score_from_measurement(measurement: PerformanceMeasurement) -> tuple[float, list[str]]:
    """
    Convert a 0-100 performance score into 0-10 with vitals penalties.

    Returns:
        Tuple of (score, applied_penalties)
    """
    score = measurement.score / 10.0
    penalties: list[str] = []
    vitals = measurement.web_vitals

    if vitals.lcp is not None:
        if vitals.lcp > 4.0:
            score *= 0.5
            penalties.append("lcp_poor")
        elif vitals.lcp > 2.5:
            score *= 0.8
            penalties.append("lcp_needs_improvement")
    if vitals.cls is not None:
        if vitals.cls > 0.25:
            score *= 0.7
            penalties.append("cls_poor")
        elif vitals.cls > 0.1:
            score *= 0.9
            penalties.append("cls_needs_improvement")
    if vitals.fid is not None:
        if vitals.fid > 300:
            score *= 0.8
            penalties.append("fid_poor")
        elif vitals.fid > 100:
            score *= 0.95
            penalties.append("fid_needs_improvement")

    return score, penalties


def estimate_speed_from_vitals(vitals: WebVitals) -> float:
    """Rough 0-10 estimate from browser-measured vitals."""
    estimate = 100.0
    if vitals.lcp is not None:
        if vitals.lcp > 4.0:
            estimate -= 30
        elif vitals.lcp > 2.5:
            estimate -= 15
    if vitals.cls is not None:
        if vitals.cls > 0.25:
            estimate -= 25
        elif vitals.cls > 0.1:
            estimate -= 10
    if vitals.fid is not None:
        if vitals.fid > 300:
            estimate -= 20
        elif vitals.fid > 100:
            estimate -= 5
    return max(0.0, estimate) / 10.0


class SpeedScorer:
    """Tier-3 speed scorer backed by a performance API."""

    criterion = Criterion.SPEED

    def __init__(
        self,
        api: PerformanceApi,
        client: ResilientApiClient,
        policy: RetryPolicy | None = None,
    ):
        self.api = api
        self.client = client
        self.policy = policy or RetryPolicy()

    async def score(self, context: ScoringContext, config: ScoringConfig) -> CriterionResult:
        def no_measurement(mode: FailureMode, error: str | None) -> PerformanceMeasurement | None:
            return None

        result: ApiCallResult[PerformanceMeasurement | None] = await self.client.call(
            lambda: self.api.measure(context.url),
            self.policy,
            no_measurement,
        )

        if not result.fallback and result.value is not None:
            score, penalties = speed_score_from_measurement(result.value)
            checks = {
                "performance_score_good": result.value.score >= 90,
                "lcp_within_limit": not any(p.startswith("lcp_") for p in penalties),
                "cls_within_limit": not any(p.startswith("cls_") for p in penalties),
            }
            passed = [name for name, ok in checks.items() if ok]
            failed = [name for name, ok in checks.items() if not ok]
            return CriterionResult(
                criterion=self.criterion,
                score=score,
                evidence={
                    "source": "pagespeed",
                    "performance_score": result.value.score,
                    "web_vitals": result.value.web_vitals.to_dict(),
                    "penalties": penalties,
                    **result.evidence(),
                },
                passed=passed,
                failed=failed,
            )

        evidence = result.evidence()
        if context.web_vitals is not None:
            score = estimate_speed_from_vitals(context.web_vitals)
            evidence.update(source="browser_estimate", web_vitals=context.web_vitals.to_dict())
        else:
            score = config.speed_fallback_score
            evidence.update(source="default")
        evidence["description"] = "Performance API unavailable; fallback score applied"

        logger.warning(
            "speed_fallback_used",
            url=context.url,
            failure_mode=evidence.get("failure_mode"),
            attempts=result.attempt_count,
            fallback_source=evidence["source"],
        )
        return CriterionResult(criterion=self.criterion, score=score, evidence=evidence)


class ScorerRegistry:
    """Criterion -> scorer mapping."""

    def __init__(self, scorers: Iterable[CriterionScorer] = ()):
        self._scorers: dict[Criterion, CriterionScorer] = {}
        for scorer in scorers:
            self.register(scorer)

    def register(self, scorer: CriterionScorer) -> None:
        self._scorers[scorer.criterion] = scorer

    def get(self, criterion: Criterion) -> CriterionScorer | None:
        return self._scorers.get(criterion)

    def for_tier(self, tier: int) -> list[CriterionScorer]:
        return [self._scorers[c] for c in TIER_CRITERIA[tier] if c in self._scorers]

    def missing(self) -> list[Criterion]:
        """Criteria with no registered scorer."""
        return [
            c for criteria in TIER_CRITERIA.values() for c in criteria if c not in self._scorers
        ]


def build_default_registry(
    judge: AiJudge | None,
    performance_api: PerformanceApi,
    api_client: ResilientApiClient,
    policy: RetryPolicy | None = None,
) -> ScorerRegistry:
    """
    Registry with every built-in scorer.

    Without a judge the tier-2 criteria have no scorer and are reported
    as missing from the aggregate.
    """
    registry = ScorerRegistry(
        HtmlCriterionScorer(criterion, check) for criterion, check in TIER1_CHECKS.items()
    )
    if judge is not None:
        for criterion in TIER_CRITERIA[2]:
            registry.register(AiCriterionScorer(criterion, judge))
    registry.register(SpeedScorer(performance_api, api_client, policy))
    return registry
