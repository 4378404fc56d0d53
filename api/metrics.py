"""Prometheus metrics for monitoring and observability."""

from __future__ import annotations

import re
import time
from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware

# Request metrics
REQUEST_COUNT = Counter(
    "effectiveness_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "effectiveness_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

REQUEST_IN_PROGRESS = Gauge(
    "effectiveness_http_requests_in_progress",
    "HTTP requests currently being processed",
    ["method", "endpoint"],
)

# Error metrics
ERROR_COUNT = Counter(
    "effectiveness_errors_total",
    "Total application errors",
    ["error_type", "endpoint"],
)

# Run metrics
RUNS_TOTAL = Counter(
    "effectiveness_runs_total",
    "Effectiveness runs by lifecycle event",
    ["kind", "status"],
)

RUNS_IN_PROGRESS = Gauge(
    "effectiveness_runs_in_progress",
    "Effectiveness runs currently being processed",
)

RUN_DURATION = Histogram(
    "effectiveness_run_duration_seconds",
    "Wall time of one entity's run",
    ["kind"],
    buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 900.0],
)

STEP_ERRORS_TOTAL = Counter(
    "effectiveness_step_errors_total",
    "Failed pipeline steps by error category",
    ["category", "step"],
)

FALLBACK_SCORES_TOTAL = Counter(
    "effectiveness_fallback_scores_total",
    "Criterion scores produced by a fallback path",
    ["criterion"],
)

INCOMPLETE_AGGREGATIONS_TOTAL = Counter(
    "effectiveness_incomplete_aggregations_total",
    "Runs aggregated over fewer than all criteria",
)

COLLECTOR_SOURCE_FAILURES = Counter(
    "effectiveness_collector_source_failures_total",
    "Data collector sources that degraded",
    ["source", "category"],
)

EXTERNAL_API_ATTEMPTS = Counter(
    "effectiveness_external_api_attempts_total",
    "External API attempts by outcome",
    ["service", "outcome"],
)

STALE_RUNS_REAPED = Counter(
    "effectiveness_stale_runs_reaped_total",
    "Runs marked failed by the stale run reaper",
)

PROGRESS_SUBSCRIBERS = Gauge(
    "effectiveness_progress_subscribers",
    "Open progress stream subscriptions",
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    metrics: bytes = generate_latest()
    return metrics


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    content_type: str = CONTENT_TYPE_LATEST
    return content_type


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect request metrics."""

    # Paths to exclude from metrics
    EXCLUDE_PATHS = {"/metrics", "/health", "/ready", "/favicon.ico"}

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if request.url.path in self.EXCLUDE_PATHS:
            return await call_next(request)

        method = request.method
        endpoint = self._normalize_path(request.url.path)

        REQUEST_IN_PROGRESS.labels(method=method, endpoint=endpoint).inc()

        start_time = time.perf_counter()

        try:
            response = await call_next(request)

            REQUEST_COUNT.labels(
                method=method,
                endpoint=endpoint,
                status_code=str(response.status_code),
            ).inc()

            duration = time.perf_counter() - start_time
            REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(duration)

            return response

        except Exception as e:
            ERROR_COUNT.labels(
                error_type=type(e).__name__,
                endpoint=endpoint,
            ).inc()
            raise

        finally:
            REQUEST_IN_PROGRESS.labels(method=method, endpoint=endpoint).dec()

    def _normalize_path(self, path: str) -> str:
        """Normalize path by replacing UUIDs and IDs with placeholders."""
        path = re.sub(
            r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
            "{id}",
            path,
            flags=re.IGNORECASE,
        )
        path = re.sub(r"/\d+(/|$)", r"/{id}\1", path)
        return path


# Helper functions for recording engine metrics


def record_run_started(kind: str) -> None:
    """Record a run started."""
    RUNS_TOTAL.labels(kind=kind, status="started").inc()
    RUNS_IN_PROGRESS.inc()


def record_run_finished(kind: str, success: bool, duration: float | None = None) -> None:
    """Record a run reaching a terminal state."""
    RUNS_TOTAL.labels(kind=kind, status="completed" if success else "failed").inc()
    RUNS_IN_PROGRESS.dec()
    if duration is not None:
        RUN_DURATION.labels(kind=kind).observe(duration)


def record_step_error(category: str, step: str) -> None:
    """Record a failed pipeline step."""
    STEP_ERRORS_TOTAL.labels(category=category, step=step).inc()


def record_fallback_score(criterion: str) -> None:
    """Record a criterion scored through a fallback path."""
    FALLBACK_SCORES_TOTAL.labels(criterion=criterion).inc()


def record_incomplete_aggregation() -> None:
    """Record an aggregation over fewer than all criteria."""
    INCOMPLETE_AGGREGATIONS_TOTAL.inc()


def record_collector_failure(source: str, category: str) -> None:
    """Record a degraded data collector source."""
    COLLECTOR_SOURCE_FAILURES.labels(source=source, category=category).inc()


def record_external_api_attempt(service: str, outcome: str) -> None:
    """Record one external API attempt."""
    EXTERNAL_API_ATTEMPTS.labels(service=service, outcome=outcome).inc()


def record_stale_runs_reaped(count: int) -> None:
    """Record runs failed by the reaper."""
    if count > 0:
        STALE_RUNS_REAPED.inc(count)


def update_subscriber_count(count: int) -> None:
    """Update the open subscription gauge."""
    PROGRESS_SUBSCRIBERS.set(count)
