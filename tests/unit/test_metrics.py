"""Tests for metrics module."""

from unittest.mock import MagicMock

import pytest
from prometheus_client import REGISTRY

from api.metrics import (
    ERROR_COUNT,
    REQUEST_COUNT,
    REQUEST_IN_PROGRESS,
    REQUEST_LATENCY,
    MetricsMiddleware,
    get_metrics,
    get_metrics_content_type,
    record_collector_failure,
    record_external_api_attempt,
    record_fallback_score,
    record_incomplete_aggregation,
    record_run_finished,
    record_run_started,
    record_stale_runs_reaped,
    record_step_error,
    update_subscriber_count,
)


def sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestMetricsOutput:
    """Tests for metrics output generation."""

    def test_get_metrics_returns_bytes(self):
        assert isinstance(get_metrics(), bytes)

    def test_get_metrics_content_type(self):
        content_type = get_metrics_content_type()
        assert "text/plain" in content_type or "openmetrics" in content_type

    def test_get_metrics_contains_engine_metrics(self):
        output = get_metrics().decode("utf-8")

        assert "effectiveness_http_requests_total" in output
        assert "effectiveness_http_request_duration_seconds" in output
        assert "effectiveness_runs_in_progress" in output
        assert "effectiveness_progress_subscribers" in output


class TestMetricsMiddleware:
    """Tests for metrics middleware."""

    @pytest.fixture
    def middleware(self):
        return MetricsMiddleware(MagicMock())

    def test_normalize_path_uuid(self, middleware):
        path = "/v1/effectiveness/latest/550e8400-e29b-41d4-a716-446655440000"
        assert middleware._normalize_path(path) == "/v1/effectiveness/latest/{id}"

    def test_normalize_path_numeric_id(self, middleware):
        assert middleware._normalize_path("/v1/reports/12345") == "/v1/reports/{id}"

    def test_normalize_path_no_id(self, middleware):
        assert middleware._normalize_path("/v1/effectiveness/admin/reap") == (
            "/v1/effectiveness/admin/reap"
        )

    def test_normalize_path_multiple_uuids(self, middleware):
        path = (
            "/v1/effectiveness/evidence/550e8400-e29b-41d4-a716-446655440000"
            "/660e8400-e29b-41d4-a716-446655440001"
        )
        assert middleware._normalize_path(path) == "/v1/effectiveness/evidence/{id}/{id}"

    def test_exclude_paths(self, middleware):
        assert {"/metrics", "/health", "/ready"} <= middleware.EXCLUDE_PATHS


class TestEngineMetrics:
    """Tests for engine metric helpers."""

    def test_run_lifecycle(self):
        labels = {"kind": "competitor", "status": "failed"}
        before = sample("effectiveness_runs_total", labels)
        in_progress = sample("effectiveness_runs_in_progress")

        record_run_started("competitor")
        assert sample("effectiveness_runs_in_progress") == in_progress + 1

        record_run_finished("competitor", success=False, duration=12.0)
        assert sample("effectiveness_runs_total", labels) == before + 1
        assert sample("effectiveness_runs_in_progress") == in_progress

    def test_step_error(self):
        labels = {"category": "browser_crash", "step": "collect_screenshot"}
        before = sample("effectiveness_step_errors_total", labels)

        record_step_error("browser_crash", "collect_screenshot")

        assert sample("effectiveness_step_errors_total", labels) == before + 1

    def test_fallback_and_incomplete(self):
        fallback_before = sample("effectiveness_fallback_scores_total", {"criterion": "speed"})
        incomplete_before = sample("effectiveness_incomplete_aggregations_total")

        record_fallback_score("speed")
        record_incomplete_aggregation()

        assert sample("effectiveness_fallback_scores_total", {"criterion": "speed"}) == (
            fallback_before + 1
        )
        assert sample("effectiveness_incomplete_aggregations_total") == incomplete_before + 1

    def test_collector_and_api_attempts(self):
        collector_labels = {"source": "web_vitals", "category": "network_timeout"}
        api_labels = {"service": "pagespeed", "outcome": "rate_limited"}
        collector_before = sample("effectiveness_collector_source_failures_total", collector_labels)
        api_before = sample("effectiveness_external_api_attempts_total", api_labels)

        record_collector_failure("web_vitals", "network_timeout")
        record_external_api_attempt("pagespeed", "rate_limited")

        assert sample("effectiveness_collector_source_failures_total", collector_labels) == (
            collector_before + 1
        )
        assert sample("effectiveness_external_api_attempts_total", api_labels) == api_before + 1

    def test_stale_runs_reaped_ignores_zero(self):
        before = sample("effectiveness_stale_runs_reaped_total")

        record_stale_runs_reaped(0)
        record_stale_runs_reaped(3)

        assert sample("effectiveness_stale_runs_reaped_total") == before + 3

    def test_subscriber_gauge(self):
        update_subscriber_count(4)
        assert sample("effectiveness_progress_subscribers") == 4
        update_subscriber_count(0)


class TestMetricLabels:
    """Tests for metric label validation."""

    def test_request_count_labels(self):
        assert REQUEST_COUNT._labelnames == ("method", "endpoint", "status_code")

    def test_request_latency_labels(self):
        assert REQUEST_LATENCY._labelnames == ("method", "endpoint")

    def test_request_in_progress_labels(self):
        assert REQUEST_IN_PROGRESS._labelnames == ("method", "endpoint")

    def test_error_count_labels(self):
        assert ERROR_COUNT._labelnames == ("error_type", "endpoint")


class TestHistogramBuckets:
    """Tests for histogram bucket configuration."""

    def test_request_latency_buckets(self):
        buckets = REQUEST_LATENCY._upper_bounds
        assert 0.005 in buckets  # 5ms
        assert 0.1 in buckets  # 100ms
        assert 10.0 in buckets  # 10s
