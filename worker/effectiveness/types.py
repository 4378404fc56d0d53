"""Core data types for effectiveness analysis.

Criteria, tiers, the collected data bundle, scoring context and
criterion results shared by the collector, scorer and orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Criterion(StrEnum):
    """The eight fixed effectiveness criteria."""

    UX = "ux"
    TRUST = "trust"
    ACCESSIBILITY = "accessibility"
    SEO = "seo"
    POSITIONING = "positioning"
    BRAND_STORY = "brand_story"
    CTAS = "ctas"
    SPEED = "speed"


class ScreenshotMode(StrEnum):
    """Screenshot capture modes."""

    ABOVE_FOLD = "above_fold"
    FULL_PAGE = "full_page"


class HtmlQuality(StrEnum):
    """Which HTML source a bundle's best HTML came from."""

    RENDERED = "rendered"
    RAW = "raw"
    NONE = "none"


CRITERION_TIERS: dict[Criterion, int] = {
    Criterion.UX: 1,
    Criterion.TRUST: 1,
    Criterion.ACCESSIBILITY: 1,
    Criterion.SEO: 1,
    Criterion.POSITIONING: 2,
    Criterion.BRAND_STORY: 2,
    Criterion.CTAS: 2,
    Criterion.SPEED: 3,
}

TIER_CRITERIA: dict[int, tuple[Criterion, ...]] = {
    tier: tuple(c for c, t in CRITERION_TIERS.items() if t == tier) for tier in (1, 2, 3)
}

TOTAL_CRITERIA = len(CRITERION_TIERS)

DEFAULT_BUZZWORDS = (
    "transformative",
    "revolutionary",
    "ai-driven",
    "cutting-edge",
    "innovative",
    "next-generation",
    "groundbreaking",
    "disruptive",
)


@dataclass
class ScoringConfig:
    """Thresholds and knobs used by criterion scorers."""

    buzzwords: tuple[str, ...] = DEFAULT_BUZZWORDS
    hero_words: int = 22
    lcp_limit: float = 3.0
    cls_limit: float = 0.1
    neutral_score: float = 5.0
    tier2_timeout_seconds: float = 40.0
    speed_fallback_score: float = 5.0
    max_text_chars: int = 6000


@dataclass
class CollectorConfig:
    """Per-source timeouts and browser settings for data collection."""

    html_timeout: float = 30.0
    render_timeout: float = 45.0
    screenshot_timeout: float = 60.0
    full_page_timeout: float = 90.0
    web_vitals_timeout: float = 60.0
    total_timeout: float = 120.0
    viewport_width: int = 1440
    viewport_height: int = 900


@dataclass
class WebVitals:
    """Core web vitals for a page."""

    lcp: float | None = None  # seconds
    cls: float | None = None
    fid: float | None = None  # milliseconds
    fcp: float | None = None  # seconds
    ttfb: float | None = None  # milliseconds
    source: str = "browser"

    def to_dict(self) -> dict[str, Any]:
        return {
            "lcp": self.lcp,
            "cls": self.cls,
            "fid": self.fid,
            "fcp": self.fcp,
            "ttfb": self.ttfb,
            "source": self.source,
        }


@dataclass
class DataBundle:
    """
    Raw materials collected for one URL.

    Every field is independently present or errored. The bundle as a
    whole never fails, it only degrades.
    """

    url: str
    raw_html: str | None = None
    raw_html_error: str | None = None
    rendered_html: str | None = None
    rendered_html_error: str | None = None
    screenshot_url: str | None = None
    screenshot_error: str | None = None
    full_page_screenshot_url: str | None = None
    full_page_screenshot_error: str | None = None
    web_vitals: WebVitals | None = None
    web_vitals_error: str | None = None
    # source name -> error category tag
    error_categories: dict[str, str] = field(default_factory=dict)
    # source name -> elapsed milliseconds
    timings_ms: dict[str, int] = field(default_factory=dict)
    total_ms: int = 0

    @property
    def html(self) -> str | None:
        """Best available HTML: rendered first, then raw."""
        return self.rendered_html or self.raw_html

    @property
    def html_quality(self) -> HtmlQuality:
        if self.rendered_html:
            return HtmlQuality.RENDERED
        if self.raw_html:
            return HtmlQuality.RAW
        return HtmlQuality.NONE

    @property
    def errors(self) -> dict[str, str]:
        """Error strings keyed by source name."""
        candidates = {
            "raw_html": self.raw_html_error,
            "rendered_html": self.rendered_html_error,
            "screenshot": self.screenshot_error,
            "full_page_screenshot": self.full_page_screenshot_error,
            "web_vitals": self.web_vitals_error,
        }
        return {k: v for k, v in candidates.items() if v}

    @property
    def degraded(self) -> bool:
        return bool(self.errors)

    def summary(self) -> dict[str, Any]:
        """Compact description for logs and progress detail."""
        return {
            "url": self.url,
            "html_quality": self.html_quality.value,
            "has_screenshot": self.screenshot_url is not None,
            "has_full_page_screenshot": self.full_page_screenshot_url is not None,
            "has_web_vitals": self.web_vitals is not None,
            "errors": self.errors,
            "timings_ms": self.timings_ms,
            "total_ms": self.total_ms,
        }


@dataclass
class ScoringContext:
    """Input handed to every criterion scorer."""

    url: str
    html: str | None = None
    screenshot_url: str | None = None
    full_page_screenshot_url: str | None = None
    web_vitals: WebVitals | None = None
    html_quality: HtmlQuality = HtmlQuality.NONE
    # Earlier tier scores, available to later tiers as context
    prior_scores: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_bundle(cls, bundle: DataBundle) -> ScoringContext:
        return cls(
            url=bundle.url,
            html=bundle.html,
            screenshot_url=bundle.screenshot_url,
            full_page_screenshot_url=bundle.full_page_screenshot_url,
            web_vitals=bundle.web_vitals,
            html_quality=bundle.html_quality,
        )


@dataclass
class CriterionResult:
    """Score for one criterion with its evidence and checklist."""

    criterion: Criterion
    score: float
    evidence: dict[str, Any] = field(default_factory=dict)
    passed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.score = round(min(10.0, max(0.0, float(self.score))), 1)

    @property
    def tier(self) -> int:
        return CRITERION_TIERS[self.criterion]

    @property
    def passes(self) -> dict[str, list[str]]:
        return {"passed": list(self.passed), "failed": list(self.failed)}

    @property
    def is_fallback(self) -> bool:
        return bool(self.evidence.get("fallback"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "criterion": self.criterion.value,
            "tier": self.tier,
            "score": self.score,
            "evidence": self.evidence,
            "passes": self.passes,
        }


@dataclass
class AggregateResult:
    """Overall score over whichever criteria were scored."""

    overall_score: float
    evidence: dict[str, Any]

    @property
    def complete(self) -> bool:
        return bool(self.evidence.get("complete"))
