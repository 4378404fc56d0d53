"""Tests for criterion scorers and the scorer registry."""

import pytest

from worker.effectiveness.errors import ClientRequestError, RateLimitedError, ServerError
from worker.effectiveness.pagespeed import PerformanceMeasurement
from worker.effectiveness.resilience import CircuitBreaker, ResilientApiClient, RetryPolicy
from worker.effectiveness.scorers import (
    AiCriterionScorer,
    HtmlCriterionScorer,
    ScorerRegistry,
    SpeedScorer,
    build_default_registry,
    estimate_speed_from_vitals,
    speed_score_from_measurement,
)
from worker.effectiveness.criteria import score_seo
from worker.effectiveness.types import (
    Criterion,
    HtmlQuality,
    ScoringConfig,
    ScoringContext,
    WebVitals,
)

from tests.fixtures import (
    GOOD_MEASUREMENT,
    SAMPLE_HTML,
    FakeJudge,
    FakePerformanceApi,
    SleepRecorder,
)

URL = "https://acme.example"


def speed_scorer(api: FakePerformanceApi, max_attempts: int = 3) -> SpeedScorer:
    client = ResilientApiClient("pagespeed", CircuitBreaker(), sleep=SleepRecorder())
    return SpeedScorer(api, client, RetryPolicy(max_attempts=max_attempts))


class TestHtmlCriterionScorer:
    """Tests for tier-1 scorer wrapping."""

    @pytest.mark.asyncio
    async def test_no_html_gives_neutral_score(self):
        scorer = HtmlCriterionScorer(Criterion.SEO, score_seo)

        result = await scorer.score(ScoringContext(url=URL), ScoringConfig(neutral_score=5.0))

        assert result.score == 5.0
        assert result.evidence["neutral"] is True
        assert result.evidence["reason"] == "no_html"

    @pytest.mark.asyncio
    async def test_html_is_checked(self):
        scorer = HtmlCriterionScorer(Criterion.SEO, score_seo)
        context = ScoringContext(url=URL, html=SAMPLE_HTML, html_quality=HtmlQuality.RAW)

        result = await scorer.score(context, ScoringConfig())

        assert result.score == 10.0
        assert result.evidence["html_quality"] == "raw"


class TestAiCriterionScorer:
    """Tests for tier-2 scoring through the judge."""

    @pytest.mark.asyncio
    async def test_vision_mode_with_screenshot(self):
        judge = FakeJudge(score=8.0)
        scorer = AiCriterionScorer(Criterion.POSITIONING, judge)
        context = ScoringContext(
            url=URL,
            html=SAMPLE_HTML,
            screenshot_url="/screenshots/hero.png",
            html_quality=HtmlQuality.RENDERED,
        )

        result = await scorer.score(context, ScoringConfig())

        assert result.score == 8.0
        assert result.evidence["mode"] == "vision"
        assert result.passed == ["clear"]
        assert result.failed == ["specific"]
        assert judge.calls[0][2] == "/screenshots/hero.png"

    @pytest.mark.asyncio
    async def test_text_only_without_screenshot(self):
        judge = FakeJudge()
        scorer = AiCriterionScorer(Criterion.BRAND_STORY, judge)
        context = ScoringContext(url=URL, html=SAMPLE_HTML, prior_scores={"seo": 9.0})

        result = await scorer.score(context, ScoringConfig())

        assert result.evidence["mode"] == "text_only"
        assert "seo=9.0" in judge.calls[0][1]

    @pytest.mark.asyncio
    async def test_nothing_to_judge_is_neutral(self):
        judge = FakeJudge()
        scorer = AiCriterionScorer(Criterion.CTAS, judge)

        result = await scorer.score(ScoringContext(url=URL), ScoringConfig(neutral_score=5.0))

        assert result.score == 5.0
        assert judge.calls == []


class TestSpeedScoring:
    """Tests for converting performance data to a score."""

    def test_good_measurement_has_no_penalties(self):
        score, penalties = speed_score_from_measurement(GOOD_MEASUREMENT)

        assert score == 9.5
        assert penalties == []

    def test_poor_vitals_penalised(self):
        measurement = PerformanceMeasurement(
            score=80.0,
            web_vitals=WebVitals(lcp=4.5, cls=0.3, fid=350.0),
        )

        score, penalties = speed_score_from_measurement(measurement)

        assert penalties == ["lcp_poor", "cls_poor", "fid_poor"]
        assert score == pytest.approx(8.0 * 0.5 * 0.7 * 0.8)

    def test_estimate_from_browser_vitals(self):
        assert estimate_speed_from_vitals(WebVitals(lcp=1.0, cls=0.0)) == 10.0
        assert estimate_speed_from_vitals(WebVitals(lcp=3.0, cls=0.2)) == 7.5


class TestSpeedScorer:
    """Tests for the tier-3 scorer and its fallbacks."""

    @pytest.mark.asyncio
    async def test_measured_score(self):
        scorer = speed_scorer(FakePerformanceApi())

        result = await scorer.score(ScoringContext(url=URL), ScoringConfig())

        assert result.score == 9.5
        assert not result.is_fallback
        assert result.evidence["source"] == "pagespeed"
        assert result.evidence["attempts"] == 1
        assert set(result.passed) == {
            "performance_score_good",
            "lcp_within_limit",
            "cls_within_limit",
        }

    @pytest.mark.asyncio
    async def test_recovers_after_rate_limit(self):
        api = FakePerformanceApi(outcomes=[RateLimitedError(retry_after=1)])
        scorer = speed_scorer(api)

        result = await scorer.score(ScoringContext(url=URL), ScoringConfig())

        assert not result.is_fallback
        assert api.calls == 2
        assert result.evidence["attempts"] == 2

    @pytest.mark.asyncio
    async def test_fallback_estimates_from_browser_vitals(self):
        api = FakePerformanceApi(default=ServerError(503))
        context = ScoringContext(url=URL, web_vitals=WebVitals(lcp=3.0, cls=0.05))

        result = await speed_scorer(api).score(context, ScoringConfig())

        assert result.is_fallback
        assert result.score == 8.5
        assert result.evidence["source"] == "browser_estimate"
        assert result.evidence["failure_mode"] == "server_error"
        assert len(result.evidence["attempt_log"]) == 3

    @pytest.mark.asyncio
    async def test_fallback_default_without_vitals(self):
        api = FakePerformanceApi(default=ClientRequestError(400))

        result = await speed_scorer(api).score(
            ScoringContext(url=URL),
            ScoringConfig(speed_fallback_score=5.0),
        )

        assert result.is_fallback
        assert result.score == 5.0
        assert result.evidence["source"] == "default"
        assert result.evidence["failure_mode"] == "client_error"
        assert api.calls == 1


class TestScorerRegistry:
    """Tests for registry contents."""

    def test_default_registry_with_judge(self):
        registry = build_default_registry(
            FakeJudge(),
            FakePerformanceApi(),
            ResilientApiClient("pagespeed"),
        )

        assert registry.missing() == []
        assert [s.criterion for s in registry.for_tier(1)] == [
            Criterion.UX,
            Criterion.TRUST,
            Criterion.ACCESSIBILITY,
            Criterion.SEO,
        ]
        assert len(registry.for_tier(2)) == 3
        assert [s.criterion for s in registry.for_tier(3)] == [Criterion.SPEED]

    def test_without_judge_tier2_missing(self):
        registry = build_default_registry(
            None,
            FakePerformanceApi(),
            ResilientApiClient("pagespeed"),
        )

        assert registry.missing() == [
            Criterion.POSITIONING,
            Criterion.BRAND_STORY,
            Criterion.CTAS,
        ]
        assert registry.for_tier(2) == []

    def test_register_replaces(self):
        registry = ScorerRegistry()
        first = HtmlCriterionScorer(Criterion.SEO, score_seo)
        second = HtmlCriterionScorer(Criterion.SEO, score_seo)
        registry.register(first)
        registry.register(second)

        assert registry.get(Criterion.SEO) is second
