"""Parallel data collection for one URL.

All sources (raw HTML, rendered HTML, above-fold screenshot, full-page
screenshot, web vitals) are fetched concurrently. Each has its own
timeout and error field; a failing source degrades only its own field.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from api.metrics import record_collector_failure
from worker.effectiveness.browser import ScreenshotCapture
from worker.effectiveness.errors import classify_exception, describe_exception
from worker.effectiveness.types import (
    CollectorConfig,
    DataBundle,
    ScreenshotMode,
    WebVitals,
)

logger = structlog.get_logger(__name__)


class HtmlSource(Protocol):
    """Fetches the server-delivered HTML of a page."""

    async def fetch(self, url: str) -> str: ...


class HtmlRenderer(Protocol):
    """Returns the HTML of a page after client-side rendering."""

    async def render(self, url: str) -> str: ...


class ScreenshotProvider(Protocol):
    """Captures screenshots; raises a classifiable error on failure."""

    async def capture(self, url: str, mode: ScreenshotMode) -> ScreenshotCapture: ...


class WebVitalsProvider(Protocol):
    """Measures core web vitals."""

    async def measure(self, url: str) -> WebVitals: ...


class HtmlFetcher:
    """Plain HTTP fetch of a page's HTML."""

    def __init__(
        self,
        user_agent: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.user_agent = user_agent
        self.timeout = timeout
        self._transport = transport

    async def fetch(self, url: str) -> str:
        """
        Fetch a URL and return its HTML body.

        Raises:
            httpx.HTTPStatusError: non-2xx response
            httpx.TimeoutException: request timed out
            ValueError: the response is not HTML
        """
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            max_redirects=5,
            transport=self._transport,
        ) as client:
            response = await client.get(
                url,
                headers={
                    "User-Agent": self.user_agent,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "Accept-Language": "en-US,en;q=0.5",
                },
            )
        response.raise_for_status()

        content_type = response.headers.get("content-type", "")
        if content_type and "html" not in content_type.lower():
            raise ValueError(f"Expected HTML, got {content_type}")
        return response.text


@dataclass
class _SourceOutcome:
    name: str
    value: Any = None
    error: str | None = None
    category: str | None = None
    elapsed_ms: int = 0


class ParallelDataCollector:
    """Collects the raw materials a scoring run needs for one URL."""

    def __init__(
        self,
        html_source: HtmlSource,
        renderer: HtmlRenderer,
        screenshots: ScreenshotProvider,
        vitals: WebVitalsProvider,
    ):
        self.html_source = html_source
        self.renderer = renderer
        self.screenshots = screenshots
        self.vitals = vitals

    async def _run_source(
        self,
        name: str,
        factory: Callable[[], Awaitable[Any]],
        timeout: float,
    ) -> _SourceOutcome:
        """Run one source under its own timeout, converting failure to an outcome."""
        start = time.perf_counter()
        try:
            value = await asyncio.wait_for(factory(), timeout=timeout)
        except TimeoutError as e:
            elapsed = int((time.perf_counter() - start) * 1000)
            message = describe_exception(e)
            if message == "TimeoutError":
                message = f"Timed out after {timeout:g}s"
            return _SourceOutcome(
                name=name,
                error=message,
                category=classify_exception(e).value,
                elapsed_ms=elapsed,
            )
        except Exception as e:
            return _SourceOutcome(
                name=name,
                error=describe_exception(e),
                category=classify_exception(e).value,
                elapsed_ms=int((time.perf_counter() - start) * 1000),
            )
        return _SourceOutcome(
            name=name,
            value=value,
            elapsed_ms=int((time.perf_counter() - start) * 1000),
        )

    async def collect_all_data(
        self,
        url: str,
        config: CollectorConfig | None = None,
    ) -> DataBundle:
        """
        Fetch every source for ``url`` concurrently.

        Args:
            url: Page to collect
            config: Per-source and total timeouts

        Returns:
            DataBundle with each field present or carrying its error.
            Never raises for source failures.
        """
        config = config or CollectorConfig()
        start = time.perf_counter()

        sources: dict[str, tuple[Callable[[], Awaitable[Any]], float]] = {
            "raw_html": (lambda: self.html_source.fetch(url), config.html_timeout),
            "rendered_html": (lambda: self.renderer.render(url), config.render_timeout),
            "screenshot": (
                lambda: self.screenshots.capture(url, ScreenshotMode.ABOVE_FOLD),
                config.screenshot_timeout,
            ),
            "full_page_screenshot": (
                lambda: self.screenshots.capture(url, ScreenshotMode.FULL_PAGE),
                config.full_page_timeout,
            ),
            "web_vitals": (lambda: self.vitals.measure(url), config.web_vitals_timeout),
        }

        tasks = {
            name: asyncio.create_task(self._run_source(name, factory, timeout))
            for name, (factory, timeout) in sources.items()
        }

        _, pending = await asyncio.wait(tasks.values(), timeout=config.total_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: dict[str, _SourceOutcome] = {}
        for name, task in tasks.items():
            if task.cancelled():
                outcomes[name] = _SourceOutcome(
                    name=name,
                    error=f"Collection deadline of {config.total_timeout:g}s exceeded",
                    category="network_timeout",
                    elapsed_ms=int(config.total_timeout * 1000),
                )
            else:
                outcomes[name] = task.result()

        bundle = self._build_bundle(url, outcomes)
        bundle.total_ms = int((time.perf_counter() - start) * 1000)

        for name, outcome in outcomes.items():
            if outcome.error:
                record_collector_failure(name, outcome.category or "unknown")

        logger.info("data_collection_completed", **bundle.summary())
        return bundle

    def _build_bundle(self, url: str, outcomes: dict[str, _SourceOutcome]) -> DataBundle:
        bundle = DataBundle(url=url)

        raw = outcomes["raw_html"]
        bundle.raw_html = raw.value or None
        bundle.raw_html_error = raw.error

        rendered = outcomes["rendered_html"]
        bundle.rendered_html = rendered.value or None
        bundle.rendered_html_error = rendered.error

        shot = outcomes["screenshot"]
        bundle.screenshot_url = shot.value.url if shot.value else None
        bundle.screenshot_error = shot.error

        full = outcomes["full_page_screenshot"]
        bundle.full_page_screenshot_url = full.value.url if full.value else None
        bundle.full_page_screenshot_error = full.error

        vitals = outcomes["web_vitals"]
        bundle.web_vitals = vitals.value
        bundle.web_vitals_error = vitals.error

        bundle.timings_ms = {name: o.elapsed_ms for name, o in outcomes.items()}
        bundle.error_categories = {
            name: o.category for name, o in outcomes.items() if o.error and o.category
        }
        return bundle
