"""Performance API client (Google PageSpeed Insights).

Failures are raised as distinct exception types so the resilient client
can tell rate limiting, server errors, timeouts and unreachable hosts
apart.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from worker.effectiveness.errors import (
    ApiTimeoutError,
    ClientRequestError,
    ParsingError,
    RateLimitedError,
    ServerError,
    UnreachableError,
)
from worker.effectiveness.resilience import parse_retry_after
from worker.effectiveness.types import WebVitals

logger = structlog.get_logger(__name__)

PAGESPEED_ENDPOINT = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"


@dataclass
class PerformanceMeasurement:
    """Performance score (0-100) and web vitals for a URL."""

    score: float
    web_vitals: WebVitals

    def to_dict(self) -> dict[str, Any]:
        return {"score": self.score, "web_vitals": self.web_vitals.to_dict()}


class PerformanceApi(Protocol):
    """Measures site performance; may raise rate-limit, server or timeout errors."""

    async def measure(self, url: str) -> PerformanceMeasurement: ...


def _audit_value(audits: dict[str, Any], key: str) -> float | None:
    audit = audits.get(key) or {}
    value = audit.get("numericValue")
    return float(value) if value is not None else None


def parse_pagespeed_response(data: dict[str, Any]) -> PerformanceMeasurement:
    """Extract the performance score and vitals from a PSI v5 response."""
    try:
        lighthouse = data["lighthouseResult"]
        raw_score = lighthouse["categories"]["performance"]["score"]
    except (KeyError, TypeError) as e:
        raise ParsingError("PageSpeed response missing performance score") from e
    if raw_score is None:
        raise ParsingError("PageSpeed returned a null performance score")

    audits = lighthouse.get("audits") or {}
    lcp_ms = _audit_value(audits, "largest-contentful-paint")
    fcp_ms = _audit_value(audits, "first-contentful-paint")
    ttfb_ms = _audit_value(audits, "server-response-time")

    return PerformanceMeasurement(
        score=round(float(raw_score) * 100, 1),
        web_vitals=WebVitals(
            lcp=round(lcp_ms / 1000, 3) if lcp_ms is not None else None,
            cls=_audit_value(audits, "cumulative-layout-shift"),
            fid=_audit_value(audits, "max-potential-fid"),
            fcp=round(fcp_ms / 1000, 3) if fcp_ms is not None else None,
            ttfb=ttfb_ms,
            source="pagespeed",
        ),
    )


class PageSpeedApi:
    """PerformanceApi backed by PageSpeed Insights v5."""

    def __init__(
        self,
        api_key: str | None = None,
        strategy: str = "desktop",
        timeout: float = 120.0,
        endpoint: str = PAGESPEED_ENDPOINT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.strategy = strategy
        self.timeout = timeout
        self.endpoint = endpoint
        self._transport = transport

    async def measure(self, url: str) -> PerformanceMeasurement:
        """
        Run one PageSpeed analysis.

        Raises:
            RateLimitedError: HTTP 429 (with Retry-After when sent)
            ServerError: HTTP 5xx
            ClientRequestError: other HTTP 4xx
            ApiTimeoutError: request timed out
            UnreachableError: connection failed
            ParsingError: response body unusable
        """
        params: dict[str, str] = {
            "url": url,
            "strategy": self.strategy,
            "category": "performance",
        }
        if self.api_key:
            params["key"] = self.api_key

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.get(self.endpoint, params=params)
        except httpx.TimeoutException as e:
            raise ApiTimeoutError(f"PageSpeed timed out for {url}") from e
        except httpx.TransportError as e:
            raise UnreachableError(f"PageSpeed unreachable: {e}") from e

        status_code = response.status_code
        if status_code == 429:
            raise RateLimitedError(
                "PageSpeed rate limited",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status_code >= 500:
            raise ServerError(status_code)
        if status_code >= 400:
            raise ClientRequestError(status_code, f"PageSpeed rejected request: HTTP {status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ParsingError("PageSpeed returned invalid JSON") from e

        measurement = parse_pagespeed_response(data)
        logger.debug("pagespeed_measured", url=url, score=measurement.score)
        return measurement
