"""Wiring of the effectiveness engine from settings."""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import Settings
from api.database import get_session_maker
from worker.effectiveness.browser import BrowserConfig, PlaywrightBrowser
from worker.effectiveness.collector import HtmlFetcher, ParallelDataCollector
from worker.effectiveness.insights import InsightsGenerator
from worker.effectiveness.judge import OpenAIJudge
from worker.effectiveness.orchestrator import OrchestratorConfig, RunOrchestrator
from worker.effectiveness.pagespeed import PageSpeedApi
from worker.effectiveness.progress import ProgressRegistry
from worker.effectiveness.reaper import StaleRunReaper
from worker.effectiveness.resilience import CircuitBreaker, ResilientApiClient, RetryPolicy
from worker.effectiveness.scorers import build_default_registry
from worker.effectiveness.tiers import TieredScorer
from worker.effectiveness.types import CollectorConfig, ScoringConfig

logger = structlog.get_logger(__name__)

PAGESPEED_SERVICE = "pagespeed"


def collector_config_from_settings(settings: Settings) -> CollectorConfig:
    return CollectorConfig(
        html_timeout=settings.collector_html_timeout_seconds,
        render_timeout=settings.collector_render_timeout_seconds,
        screenshot_timeout=settings.collector_screenshot_timeout_seconds,
        full_page_timeout=settings.collector_full_page_timeout_seconds,
        web_vitals_timeout=settings.collector_web_vitals_timeout_seconds,
        total_timeout=settings.collector_total_timeout_seconds,
        viewport_width=settings.viewport_width,
        viewport_height=settings.viewport_height,
    )


def scoring_config_from_settings(settings: Settings) -> ScoringConfig:
    return ScoringConfig(
        neutral_score=settings.neutral_score,
        tier2_timeout_seconds=settings.tier2_timeout_seconds,
        speed_fallback_score=settings.speed_fallback_score,
    )


@dataclass
class EffectivenessEngine:
    """Everything the API needs to run and watch analyses."""

    orchestrator: RunOrchestrator
    reaper: StaleRunReaper
    registry: ProgressRegistry
    breaker: CircuitBreaker
    browser: PlaywrightBrowser

    async def start(self) -> None:
        self.registry.start()

    async def stop(self) -> None:
        await self.orchestrator.shutdown()
        await self.browser.stop()


def build_engine(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
) -> EffectivenessEngine:
    """
    Build the engine with its production collaborators.

    Tier-2 scorers and insights are only registered when an OpenAI key
    is configured; without one those criteria are reported missing.
    """
    session_maker = session_maker or get_session_maker()

    browser = PlaywrightBrowser(
        BrowserConfig(
            viewport_width=settings.viewport_width,
            viewport_height=settings.viewport_height,
            navigation_timeout_ms=int(settings.collector_render_timeout_seconds * 1000),
            user_agent=settings.user_agent,
            screenshot_dir=settings.screenshot_dir,
            screenshot_base_url=settings.screenshot_base_url,
        )
    )
    collector = ParallelDataCollector(
        html_source=HtmlFetcher(settings.user_agent, settings.collector_html_timeout_seconds),
        renderer=browser,
        screenshots=browser,
        vitals=browser,
    )

    judge = None
    insights = None
    if settings.ai_enabled:
        judge = OpenAIJudge(
            api_key=settings.openai_api_key or "",
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            temperature=settings.openai_temperature,
            timeout=settings.openai_timeout_seconds,
            screenshot_dir=settings.screenshot_dir,
        )
        insights = InsightsGenerator(
            api_key=settings.openai_api_key or "",
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            timeout=settings.insights_timeout_seconds,
        )
    else:
        logger.warning("ai_judge_disabled", reason="OPENAI_API_KEY not set")

    breaker = CircuitBreaker.from_settings(settings)
    policy = RetryPolicy.from_settings(settings)
    scorer_registry = build_default_registry(
        judge,
        PageSpeedApi(
            api_key=settings.pagespeed_api_key,
            strategy=settings.pagespeed_strategy,
            timeout=settings.pagespeed_attempt_timeout_seconds,
        ),
        ResilientApiClient(PAGESPEED_SERVICE, breaker),
        policy,
    )

    registry = ProgressRegistry(
        max_records=settings.progress_max_records,
        grace_seconds=settings.progress_grace_seconds,
        heartbeat_interval=settings.heartbeat_interval_seconds,
        max_subscribers_per_client=settings.sse_max_connections_per_client,
        max_subscribers=settings.sse_max_connections,
        max_connection_seconds=settings.sse_max_connection_seconds,
    )
    orchestrator = RunOrchestrator(
        session_maker=session_maker,
        collector=collector,
        scorer=TieredScorer(scorer_registry),
        registry=registry,
        insights=insights,
        config=OrchestratorConfig.from_settings(settings),
        scoring_config=scoring_config_from_settings(settings),
        collector_config=collector_config_from_settings(settings),
    )
    return EffectivenessEngine(
        orchestrator=orchestrator,
        reaper=StaleRunReaper(session_maker, registry),
        registry=registry,
        breaker=breaker,
        browser=browser,
    )
