"""Headless browser sources for data collection.

One Playwright browser serves rendered HTML, above-fold and full-page
screenshots, and in-page web-vitals measurement. Each operation opens
its own page so concurrent collection never shares page state.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from worker.effectiveness.errors import BrowserError
from worker.effectiveness.types import ScreenshotMode, WebVitals

logger = structlog.get_logger(__name__)

# Collects paint, LCP and layout-shift entries buffered during page load
WEB_VITALS_SCRIPT = """
() => new Promise((resolve) => {
  const result = { lcp: null, cls: 0, fcp: null, ttfb: null };
  const nav = performance.getEntriesByType('navigation')[0];
  if (nav) { result.ttfb = nav.responseStart; }
  const paint = performance.getEntriesByName('first-contentful-paint')[0];
  if (paint) { result.fcp = paint.startTime; }
  try {
    new PerformanceObserver((list) => {
      const entries = list.getEntries();
      const last = entries[entries.length - 1];
      if (last) { result.lcp = last.startTime; }
    }).observe({ type: 'largest-contentful-paint', buffered: true });
    new PerformanceObserver((list) => {
      for (const entry of list.getEntries()) {
        if (!entry.hadRecentInput) { result.cls += entry.value; }
      }
    }).observe({ type: 'layout-shift', buffered: true });
  } catch (e) {}
  setTimeout(() => resolve(result), 1000);
})
"""


@dataclass
class BrowserConfig:
    """Configuration for the headless browser."""

    viewport_width: int = 1440
    viewport_height: int = 900
    navigation_timeout_ms: int = 30000
    settle_ms: int = 1500
    user_agent: str | None = None
    screenshot_dir: str = "screenshots"
    screenshot_base_url: str = "/screenshots"


@dataclass
class ScreenshotCapture:
    """A stored screenshot."""

    url: str
    path: str | None = None
    mode: ScreenshotMode = ScreenshotMode.ABOVE_FOLD


class PlaywrightBrowser:
    """Renders pages, takes screenshots and measures web vitals."""

    def __init__(self, config: BrowserConfig | None = None):
        self.config = config or BrowserConfig()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> PlaywrightBrowser:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def start(self) -> None:
        """Start the browser."""
        async with self._lock:
            if self._browser is None:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=True)
                logger.info("browser_started")

    async def stop(self) -> None:
        """Stop the browser."""
        async with self._lock:
            if self._browser:
                await self._browser.close()
                self._browser = None
            if self._playwright:
                await self._playwright.stop()
                self._playwright = None

    async def _open(self, url: str) -> Page:
        if self._browser is None:
            await self.start()
        page = await self._browser.new_page(  # type: ignore[union-attr]
            viewport={
                "width": self.config.viewport_width,
                "height": self.config.viewport_height,
            },
            user_agent=self.config.user_agent,
        )
        try:
            await page.goto(
                url,
                timeout=self.config.navigation_timeout_ms,
                wait_until="networkidle",
            )
            await page.wait_for_timeout(self.config.settle_ms)
        except PlaywrightTimeout as e:
            await page.close()
            raise TimeoutError(f"Timed out loading {url}") from e
        except PlaywrightError as e:
            await page.close()
            raise BrowserError(f"Browser failed loading {url}: {e}") from e
        return page

    async def render(self, url: str) -> str:
        """
        Render a page and return its HTML after scripts ran.

        Raises:
            TimeoutError: navigation timed out
            BrowserError: the browser failed
        """
        page = await self._open(url)
        try:
            return await page.content()
        except PlaywrightError as e:
            raise BrowserError(f"Failed reading rendered HTML: {e}") from e
        finally:
            await page.close()

    async def capture(self, url: str, mode: ScreenshotMode) -> ScreenshotCapture:
        """
        Capture an above-fold or full-page screenshot.

        Returns:
            ScreenshotCapture with the public URL and local path of the PNG
        """
        page = await self._open(url)
        directory = Path(self.config.screenshot_dir)
        directory.mkdir(parents=True, exist_ok=True)
        filename = f"{uuid.uuid4().hex}-{mode.value}.png"
        path = directory / filename
        try:
            await page.screenshot(path=str(path), full_page=mode == ScreenshotMode.FULL_PAGE)
        except PlaywrightError as e:
            raise BrowserError(f"Screenshot failed ({mode.value}): {e}") from e
        finally:
            await page.close()

        return ScreenshotCapture(
            url=f"{self.config.screenshot_base_url.rstrip('/')}/{filename}",
            path=str(path),
            mode=mode,
        )

    async def measure(self, url: str) -> WebVitals:
        """Measure core web vitals in the browser."""
        page = await self._open(url)
        try:
            raw: dict[str, Any] = await page.evaluate(WEB_VITALS_SCRIPT)
        except PlaywrightError as e:
            raise BrowserError(f"Web vitals measurement failed: {e}") from e
        finally:
            await page.close()

        return WebVitals(
            lcp=round(raw["lcp"] / 1000, 3) if raw.get("lcp") is not None else None,
            cls=round(float(raw.get("cls") or 0.0), 4),
            fcp=round(raw["fcp"] / 1000, 3) if raw.get("fcp") is not None else None,
            ttfb=round(raw["ttfb"], 1) if raw.get("ttfb") is not None else None,
            source="browser",
        )
