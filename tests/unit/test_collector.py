"""Tests for parallel data collection."""

import httpx
import pytest

from worker.effectiveness.collector import HtmlFetcher
from worker.effectiveness.errors import BrowserError
from worker.effectiveness.types import CollectorConfig, HtmlQuality

from tests.fixtures import GOOD_VITALS, SAMPLE_HTML, FakeSource, make_collector

URL = "https://acme.example"


class TestCollectAllData:
    """Tests for ParallelDataCollector.collect_all_data."""

    @pytest.mark.asyncio
    async def test_all_sources_succeed(self):
        collector = make_collector()

        bundle = await collector.collect_all_data(URL)

        assert bundle.html == SAMPLE_HTML
        assert bundle.html_quality == HtmlQuality.RENDERED
        assert bundle.screenshot_url == "/screenshots/above_fold.png"
        assert bundle.full_page_screenshot_url == "/screenshots/full_page.png"
        assert bundle.web_vitals == GOOD_VITALS
        assert not bundle.degraded
        assert set(bundle.timings_ms) == {
            "raw_html",
            "rendered_html",
            "screenshot",
            "full_page_screenshot",
            "web_vitals",
        }

    @pytest.mark.asyncio
    async def test_render_failure_falls_back_to_raw_html(self):
        collector = make_collector(
            rendered=FakeSource(error=BrowserError("Target page crashed")),
        )

        bundle = await collector.collect_all_data(URL)

        assert bundle.html == SAMPLE_HTML
        assert bundle.html_quality == HtmlQuality.RAW
        assert bundle.rendered_html_error == "Target page crashed"
        assert bundle.error_categories == {"rendered_html": "browser_crash"}

    @pytest.mark.asyncio
    async def test_screenshot_failure_is_isolated(self):
        collector = make_collector(screenshots=FakeSource(error=BrowserError("no display")))

        bundle = await collector.collect_all_data(URL)

        assert bundle.screenshot_url is None
        assert bundle.full_page_screenshot_url is None
        assert bundle.screenshot_error == "no display"
        assert bundle.full_page_screenshot_error == "no display"
        assert bundle.html_quality == HtmlQuality.RENDERED
        assert bundle.web_vitals is not None

    @pytest.mark.asyncio
    async def test_every_source_failing_still_returns_bundle(self):
        down = FakeSource(error=httpx.ConnectError("refused"))
        collector = make_collector(raw=down, rendered=down, screenshots=down, vitals=down)

        bundle = await collector.collect_all_data(URL)

        assert bundle.html is None
        assert bundle.html_quality == HtmlQuality.NONE
        assert len(bundle.errors) == 5
        assert set(bundle.error_categories.values()) == {"network_timeout"}

    @pytest.mark.asyncio
    async def test_per_source_timeout(self):
        collector = make_collector(vitals=FakeSource(GOOD_VITALS, delay=1.0))

        bundle = await collector.collect_all_data(URL, CollectorConfig(web_vitals_timeout=0.01))

        assert bundle.web_vitals is None
        assert bundle.web_vitals_error == "Timed out after 0.01s"
        assert bundle.error_categories["web_vitals"] == "network_timeout"
        assert bundle.html == SAMPLE_HTML

    @pytest.mark.asyncio
    async def test_total_deadline_cancels_stragglers(self):
        slow = FakeSource(SAMPLE_HTML, delay=5.0)
        collector = make_collector(raw=slow, rendered=slow)
        config = CollectorConfig(html_timeout=10, render_timeout=10, total_timeout=0.05)

        bundle = await collector.collect_all_data(URL, config)

        assert bundle.html is None
        assert bundle.raw_html_error == "Collection deadline of 0.05s exceeded"
        assert bundle.rendered_html_error == "Collection deadline of 0.05s exceeded"
        assert bundle.screenshot_url is not None

    @pytest.mark.asyncio
    async def test_sources_run_concurrently(self):
        sources = [FakeSource(SAMPLE_HTML, delay=0.2) for _ in range(2)]
        collector = make_collector(
            raw=sources[0],
            rendered=sources[1],
            screenshots=FakeSource(delay=0.2),
            vitals=FakeSource(GOOD_VITALS, delay=0.2),
        )

        bundle = await collector.collect_all_data(URL)

        assert bundle.total_ms < 700

    @pytest.mark.asyncio
    async def test_summary_lists_errors(self):
        collector = make_collector(vitals=FakeSource(error=RuntimeError("vitals script failed")))

        summary = (await collector.collect_all_data(URL)).summary()

        assert summary["html_quality"] == "rendered"
        assert summary["has_web_vitals"] is False
        assert summary["errors"] == {"web_vitals": "vitals script failed"}


class TestHtmlFetcher:
    """Tests for the plain HTTP fetcher."""

    @pytest.mark.asyncio
    async def test_returns_body(self):
        seen = {}

        def handler(request):
            seen["ua"] = request.headers["user-agent"]
            return httpx.Response(
                200,
                headers={"content-type": "text/html; charset=utf-8"},
                text=SAMPLE_HTML,
            )

        fetcher = HtmlFetcher("TestBot/1.0", transport=httpx.MockTransport(handler))

        assert await fetcher.fetch(URL) == SAMPLE_HTML
        assert seen["ua"] == "TestBot/1.0"

    @pytest.mark.asyncio
    async def test_rejects_non_html(self):
        transport = httpx.MockTransport(
            lambda r: httpx.Response(200, headers={"content-type": "application/pdf"})
        )

        with pytest.raises(ValueError, match="Expected HTML"):
            await HtmlFetcher("TestBot/1.0", transport=transport).fetch(URL)

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(404, text="missing"))

        with pytest.raises(httpx.HTTPStatusError):
            await HtmlFetcher("TestBot/1.0", transport=transport).fetch(URL)
