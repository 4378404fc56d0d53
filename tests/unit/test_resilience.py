"""Tests for the resilient API client, retry policy and circuit breaker."""

import asyncio
import random

import httpx
import pytest

from worker.effectiveness.errors import (
    ApiTimeoutError,
    ClientRequestError,
    RateLimitedError,
    ServerError,
    UnreachableError,
)
from worker.effectiveness.resilience import (
    CircuitBreaker,
    CircuitState,
    FailureMode,
    ResilientApiClient,
    RetryPolicy,
    classify_failure,
    parse_retry_after,
)

from tests.fixtures import FakeClock, SleepRecorder


def scripted(outcomes):
    """Request factory returning or raising the next scripted outcome per call."""
    remaining = list(outcomes)
    calls = []

    async def request():
        calls.append(len(calls) + 1)
        outcome = remaining.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    request.calls = calls
    return request


def fallback(mode, error):
    return {"fallback_for": mode.value}


class TestParseRetryAfter:
    """Tests for Retry-After header parsing."""

    def test_delta_seconds(self):
        assert parse_retry_after("120") == 120.0

    def test_missing_or_blank(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("  ") is None

    def test_negative_clamped(self):
        assert parse_retry_after("-5") == 0.0

    def test_http_date_in_past(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0

    def test_garbage(self):
        assert parse_retry_after("soon") is None


class TestClassifyFailure:
    """Tests for mapping exceptions to failure modes."""

    def test_rate_limited_keeps_hint(self):
        assert classify_failure(RateLimitedError(retry_after=30)) == (
            FailureMode.RATE_LIMITED,
            30,
        )

    def test_engine_errors(self):
        assert classify_failure(ServerError(503))[0] == FailureMode.SERVER_ERROR
        assert classify_failure(ClientRequestError(400))[0] == FailureMode.CLIENT_ERROR
        assert classify_failure(ApiTimeoutError("slow"))[0] == FailureMode.NETWORK_TIMEOUT
        assert classify_failure(UnreachableError("down"))[0] == FailureMode.UNREACHABLE

    def test_httpx_status_errors(self):
        request = httpx.Request("GET", "https://api.example")
        limited = httpx.Response(429, headers={"Retry-After": "7"}, request=request)
        broken = httpx.Response(502, request=request)

        assert classify_failure(
            httpx.HTTPStatusError("429", request=request, response=limited)
        ) == (FailureMode.RATE_LIMITED, 7.0)
        assert (
            classify_failure(httpx.HTTPStatusError("502", request=request, response=broken))[0]
            == FailureMode.SERVER_ERROR
        )

    def test_builtin_timeout_and_unexpected(self):
        assert classify_failure(TimeoutError())[0] == FailureMode.NETWORK_TIMEOUT
        assert classify_failure(ConnectionRefusedError())[0] == FailureMode.UNREACHABLE
        assert classify_failure(KeyError("x"))[0] == FailureMode.UNEXPECTED


class TestRetryPolicy:
    """Tests for backoff delays."""

    def test_backoff_grows_exponentially_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, backoff_multiplier=2.0, jitter_factor=0.0)
        rng = random.Random(1)
        assert [policy.backoff_delay(n, rng) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_backoff_capped(self):
        policy = RetryPolicy(base_delay=10.0, max_delay=15.0, jitter_factor=0.0)
        assert policy.backoff_delay(5, random.Random(1)) == 15.0

    def test_jitter_stays_within_factor(self):
        policy = RetryPolicy(base_delay=10.0, jitter_factor=0.3)
        rng = random.Random(42)
        for _ in range(50):
            assert 7.0 <= policy.backoff_delay(1, rng) <= 13.0


class TestResilientApiClient:
    """Tests for retry, backoff and fallback behaviour."""

    @pytest.fixture
    def sleep(self):
        return SleepRecorder()

    @pytest.fixture
    def api(self, sleep):
        return ResilientApiClient("pagespeed", CircuitBreaker(), sleep=sleep, rng=random.Random(7))

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, api, sleep):
        result = await api.call(scripted(["ok"]), RetryPolicy(), fallback)

        assert result.value == "ok"
        assert not result.fallback
        assert result.attempt_count == 1
        assert sleep.delays == []
        assert result.evidence() == {"fallback": False, "attempts": 1}

    @pytest.mark.asyncio
    async def test_retries_timeouts_then_succeeds(self, api, sleep):
        request = scripted([ApiTimeoutError("slow"), ApiTimeoutError("slow"), "ok"])

        result = await api.call(request, RetryPolicy(jitter_factor=0.0), fallback)

        assert result.value == "ok"
        assert result.attempt_count == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self, api, sleep):
        request = scripted([RateLimitedError(retry_after=42), "ok"])

        result = await api.call(request, RetryPolicy(), fallback)

        assert result.value == "ok"
        assert sleep.delays == [42]

    @pytest.mark.asyncio
    async def test_retry_after_capped_at_window_max(self, api, sleep):
        request = scripted([RateLimitedError(retry_after=10_000), "ok"])

        await api.call(request, RetryPolicy(rate_limit_max_delay=300.0), fallback)

        assert sleep.delays == [300.0]

    @pytest.mark.asyncio
    async def test_rate_limit_without_hint_sleeps_in_window(self, api, sleep):
        request = scripted([RateLimitedError(), "ok"])

        await api.call(request, RetryPolicy(), fallback)

        assert 5.0 <= sleep.delays[0] <= 300.0

    @pytest.mark.asyncio
    async def test_server_error_sleeps_in_window(self, api, sleep):
        request = scripted([ServerError(503), "ok"])

        await api.call(request, RetryPolicy(), fallback)

        assert 1.0 <= sleep.delays[0] <= 180.0

    @pytest.mark.asyncio
    async def test_exhaustion_returns_fallback_with_evidence(self, api, sleep):
        request = scripted([ServerError(500)] * 3)

        result = await api.call(request, RetryPolicy(max_attempts=3), fallback)

        assert result.fallback
        assert result.value == {"fallback_for": "server_error"}
        assert result.failure_mode == FailureMode.SERVER_ERROR
        assert len(request.calls) == 3
        assert len(sleep.delays) == 2

        evidence = result.evidence()
        assert evidence["fallback"] is True
        assert evidence["attempts"] == 3
        assert evidence["failure_mode"] == "server_error"
        assert evidence["last_error"] == "Server error: HTTP 500"
        assert [a["outcome"] for a in evidence["attempt_log"]] == ["server_error"] * 3
        assert evidence["attempt_log"][-1]["delay_before_next"] is None

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, api, sleep):
        request = scripted([ClientRequestError(400), "never"])

        result = await api.call(request, RetryPolicy(), fallback)

        assert result.fallback
        assert result.failure_mode == FailureMode.CLIENT_ERROR
        assert len(request.calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unexpected_error_not_retried(self, api):
        request = scripted([KeyError("score"), "never"])

        result = await api.call(request, RetryPolicy(), fallback)

        assert result.failure_mode == FailureMode.UNEXPECTED
        assert len(request.calls) == 1

    @pytest.mark.asyncio
    async def test_attempt_timeout_applies(self, sleep):
        async def hangs():
            await asyncio.sleep(10)

        api = ResilientApiClient("pagespeed", CircuitBreaker(), sleep=sleep)
        result = await api.call(hangs, RetryPolicy(max_attempts=2, attempt_timeout=0.01), fallback)

        assert result.fallback
        assert result.failure_mode == FailureMode.NETWORK_TIMEOUT
        assert result.attempt_count == 2


class TestCircuitBreaker:
    """Tests for the per-service circuit breaker."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(
            failure_threshold=3,
            recovery_timeout=30.0,
            monitoring_window=60.0,
            clock=clock,
        )

    def test_opens_after_threshold(self, breaker):
        for _ in range(3):
            assert breaker.allow_request("pagespeed")
            breaker.record_failure("pagespeed")

        assert breaker.get_state("pagespeed") == CircuitState.OPEN
        assert not breaker.allow_request("pagespeed")

    def test_failures_outside_window_forgotten(self, breaker, clock):
        breaker.record_failure("pagespeed")
        breaker.record_failure("pagespeed")
        clock.advance(61)
        breaker.record_failure("pagespeed")

        assert breaker.get_state("pagespeed") == CircuitState.CLOSED

    def test_half_open_allows_single_trial(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure("pagespeed")
        clock.advance(30)

        assert breaker.allow_request("pagespeed")
        assert breaker.get_state("pagespeed") == CircuitState.HALF_OPEN
        assert not breaker.allow_request("pagespeed")

    def test_trial_success_closes(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure("pagespeed")
        clock.advance(30)
        breaker.allow_request("pagespeed")
        breaker.record_success("pagespeed")

        assert breaker.get_state("pagespeed") == CircuitState.CLOSED
        assert breaker.allow_request("pagespeed")

    def test_trial_failure_reopens(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure("pagespeed")
        clock.advance(30)
        breaker.allow_request("pagespeed")
        breaker.record_failure("pagespeed")

        assert breaker.get_state("pagespeed") == CircuitState.OPEN
        assert not breaker.allow_request("pagespeed")

    def test_circuits_are_per_service(self, breaker):
        for _ in range(3):
            breaker.record_failure("pagespeed")

        assert breaker.allow_request("openai")

    def test_status_snapshot(self, breaker):
        breaker.record_failure("pagespeed")
        breaker.record_success("openai")

        status = breaker.get_status()

        assert status["pagespeed"]["state"] == "closed"
        assert status["pagespeed"]["recent_failures"] == 1
        assert status["openai"]["total_successes"] == 1

    def test_reset(self, breaker):
        for _ in range(3):
            breaker.record_failure("pagespeed")
        breaker.reset("pagespeed")

        assert breaker.get_state("pagespeed") == CircuitState.CLOSED


class TestClientWithBreaker:
    """Tests for the client and breaker working together."""

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(self):
        breaker = CircuitBreaker(failure_threshold=1, clock=FakeClock())
        breaker.record_failure("pagespeed")
        api = ResilientApiClient("pagespeed", breaker, sleep=SleepRecorder())
        request = scripted(["never"])

        result = await api.call(request, RetryPolicy(), fallback)

        assert result.fallback
        assert result.failure_mode == FailureMode.CIRCUIT_OPEN
        assert result.attempt_count == 0
        assert request.calls == []

    @pytest.mark.asyncio
    async def test_exhaustion_counts_as_one_failure(self):
        breaker = CircuitBreaker(failure_threshold=2, clock=FakeClock())
        api = ResilientApiClient("pagespeed", breaker, sleep=SleepRecorder())

        await api.call(scripted([ServerError(500)] * 3), RetryPolicy(max_attempts=3), fallback)

        assert breaker.get_state("pagespeed") == CircuitState.CLOSED
        assert breaker.get_status()["pagespeed"]["recent_failures"] == 1

    @pytest.mark.asyncio
    async def test_client_error_does_not_trip(self):
        breaker = CircuitBreaker(failure_threshold=1, clock=FakeClock())
        api = ResilientApiClient("pagespeed", breaker, sleep=SleepRecorder())

        await api.call(scripted([ClientRequestError(403)]), RetryPolicy(), fallback)

        assert breaker.get_state("pagespeed") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_success_after_half_open_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30.0, clock=clock)
        breaker.record_failure("pagespeed")
        clock.advance(31)
        api = ResilientApiClient("pagespeed", breaker, sleep=SleepRecorder())

        result = await api.call(scripted(["ok"]), RetryPolicy(), fallback)

        assert result.value == "ok"
        assert breaker.get_state("pagespeed") == CircuitState.CLOSED
