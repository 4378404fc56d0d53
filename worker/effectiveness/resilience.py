"""Resilient calls to flaky external APIs.

Provides:
- RetryPolicy: attempts, per-attempt timeout, backoff curve and the
  rate-limit / server-error sleep windows
- CircuitBreaker: per-service breaker that short-circuits calls after
  repeated failures
- ResilientApiClient: runs a request under a policy and never raises;
  exhausting every attempt yields the caller's fallback value plus a
  record of the failure mode that caused it
"""

from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import httpx
import structlog

from api.metrics import record_external_api_attempt
from worker.effectiveness.errors import (
    ApiTimeoutError,
    ClientRequestError,
    ErrorCategory,
    RateLimitedError,
    ServerError,
    UnreachableError,
    describe_exception,
)

if TYPE_CHECKING:
    from api.config import Settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


class FailureMode(StrEnum):
    """Why a call fell back."""

    NETWORK_TIMEOUT = "network_timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    UNREACHABLE = "unreachable"
    CLIENT_ERROR = "client_error"
    CIRCUIT_OPEN = "circuit_open"
    UNEXPECTED = "unexpected_error"


# Step error tag recorded when a call falls back
FAILURE_CATEGORIES: dict[FailureMode, ErrorCategory] = {
    FailureMode.NETWORK_TIMEOUT: ErrorCategory.NETWORK_TIMEOUT,
    FailureMode.UNREACHABLE: ErrorCategory.NETWORK_TIMEOUT,
    FailureMode.RATE_LIMITED: ErrorCategory.RATE_LIMITED,
    FailureMode.SERVER_ERROR: ErrorCategory.EXTERNAL_API_ERROR,
    FailureMode.CLIENT_ERROR: ErrorCategory.EXTERNAL_API_ERROR,
    FailureMode.CIRCUIT_OPEN: ErrorCategory.EXTERNAL_API_ERROR,
    FailureMode.UNEXPECTED: ErrorCategory.UNKNOWN,
}


# Failure modes worth another attempt
RETRYABLE_MODES = frozenset(
    {
        FailureMode.NETWORK_TIMEOUT,
        FailureMode.RATE_LIMITED,
        FailureMode.SERVER_ERROR,
        FailureMode.UNREACHABLE,
    }
)


@dataclass
class RetryPolicy:
    """Retry behaviour for one external API."""

    max_attempts: int = 6
    attempt_timeout: float = 120.0
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.3
    rate_limit_min_delay: float = 5.0
    rate_limit_max_delay: float = 300.0
    server_error_min_delay: float = 1.0
    server_error_max_delay: float = 180.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        """Build the performance API policy from settings."""
        return cls(
            max_attempts=settings.pagespeed_max_attempts,
            attempt_timeout=settings.pagespeed_attempt_timeout_seconds,
            base_delay=settings.pagespeed_base_delay_seconds,
            max_delay=settings.pagespeed_max_delay_seconds,
            jitter_factor=settings.pagespeed_jitter_factor,
            rate_limit_min_delay=settings.pagespeed_rate_limit_min_delay_seconds,
            rate_limit_max_delay=settings.pagespeed_rate_limit_max_delay_seconds,
            server_error_min_delay=settings.pagespeed_server_error_min_delay_seconds,
            server_error_max_delay=settings.pagespeed_server_error_max_delay_seconds,
        )

    def backoff_delay(self, attempt: int, rng: random.Random) -> float:
        """
        Exponential backoff with random jitter.

        Args:
            attempt: 1-based number of the attempt that just failed
            rng: Random source for jitter

        Returns:
            Delay in seconds, never negative
        """
        delay = min(self.base_delay * (self.backoff_multiplier ** (attempt - 1)), self.max_delay)
        jitter = delay * self.jitter_factor * rng.uniform(-1.0, 1.0)
        return max(0.0, delay + jitter)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta seconds or HTTP date)."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def classify_failure(exc: BaseException) -> tuple[FailureMode, float | None]:
    """
    Classify an attempt failure.

    Returns:
        Tuple of (failure_mode, retry_after_hint_seconds)
    """
    if isinstance(exc, RateLimitedError):
        return FailureMode.RATE_LIMITED, exc.retry_after
    if isinstance(exc, ServerError):
        return FailureMode.SERVER_ERROR, None
    if isinstance(exc, ClientRequestError):
        return FailureMode.CLIENT_ERROR, None
    if isinstance(exc, ApiTimeoutError):
        return FailureMode.NETWORK_TIMEOUT, None
    if isinstance(exc, UnreachableError):
        return FailureMode.UNREACHABLE, None
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        if status_code == 429:
            return FailureMode.RATE_LIMITED, parse_retry_after(
                exc.response.headers.get("Retry-After")
            )
        if status_code >= 500:
            return FailureMode.SERVER_ERROR, None
        return FailureMode.CLIENT_ERROR, None
    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return FailureMode.NETWORK_TIMEOUT, None
    if isinstance(exc, (httpx.TransportError, OSError)):
        return FailureMode.UNREACHABLE, None
    return FailureMode.UNEXPECTED, None


@dataclass
class AttemptRecord:
    """One attempt made by the resilient client."""

    attempt: int
    outcome: str  # "success" or a FailureMode value
    elapsed_ms: int
    error: str | None = None
    delay_before_next: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "outcome": self.outcome,
            "elapsed_ms": self.elapsed_ms,
            "error": self.error,
            "delay_before_next": (
                round(self.delay_before_next, 3) if self.delay_before_next is not None else None
            ),
        }


@dataclass
class ApiCallResult(Generic[T]):
    """Outcome of a resilient call: a real response or a fallback value."""

    value: T
    fallback: bool = False
    failure_mode: FailureMode | None = None
    last_error: str | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    def evidence(self) -> dict[str, Any]:
        """Evidence fields describing how the value was obtained."""
        data: dict[str, Any] = {
            "fallback": self.fallback,
            "attempts": self.attempt_count,
        }
        if self.fallback:
            data["failure_mode"] = self.failure_mode.value if self.failure_mode else None
            data["last_error"] = self.last_error
            data["attempt_log"] = [a.to_dict() for a in self.attempts]
        return data


class CircuitState(StrEnum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    failures: deque[float] = field(default_factory=deque)
    opened_at: float | None = None
    trial_in_flight: bool = False
    total_failures: int = 0
    total_successes: int = 0


class CircuitBreaker:
    """
    Per-service circuit breaker.

    Opens after ``failure_threshold`` failures inside ``monitoring_window``
    seconds. While open every request is rejected; after
    ``recovery_timeout`` one trial request is let through (half-open), and
    its outcome closes or re-opens the circuit.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: float = 30.0,
        monitoring_window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.monitoring_window = monitoring_window
        self._clock = clock
        self._circuits: dict[str, _Circuit] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> CircuitBreaker:
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_timeout_seconds,
            monitoring_window=settings.circuit_monitoring_window_seconds,
        )

    def _circuit(self, name: str) -> _Circuit:
        return self._circuits.setdefault(name, _Circuit())

    def _prune(self, circuit: _Circuit, now: float) -> None:
        while circuit.failures and now - circuit.failures[0] > self.monitoring_window:
            circuit.failures.popleft()

    def allow_request(self, name: str) -> bool:
        """Check whether a request to ``name`` may proceed."""
        circuit = self._circuit(name)
        now = self._clock()

        if circuit.state == CircuitState.OPEN:
            if circuit.opened_at is not None and now - circuit.opened_at >= self.recovery_timeout:
                circuit.state = CircuitState.HALF_OPEN
                circuit.trial_in_flight = False
                logger.info("circuit_half_open", circuit=name)
            else:
                return False

        if circuit.state == CircuitState.HALF_OPEN:
            if circuit.trial_in_flight:
                return False
            circuit.trial_in_flight = True

        return True

    def record_success(self, name: str) -> None:
        circuit = self._circuit(name)
        circuit.total_successes += 1
        if circuit.state != CircuitState.CLOSED:
            logger.info("circuit_closed", circuit=name)
        circuit.state = CircuitState.CLOSED
        circuit.failures.clear()
        circuit.opened_at = None
        circuit.trial_in_flight = False

    def record_failure(self, name: str) -> None:
        circuit = self._circuit(name)
        now = self._clock()
        circuit.total_failures += 1
        circuit.failures.append(now)
        self._prune(circuit, now)

        if circuit.state == CircuitState.HALF_OPEN or (
            len(circuit.failures) >= self.failure_threshold
        ):
            if circuit.state != CircuitState.OPEN:
                logger.warning(
                    "circuit_opened",
                    circuit=name,
                    recent_failures=len(circuit.failures),
                )
            circuit.state = CircuitState.OPEN
            circuit.opened_at = now
            circuit.trial_in_flight = False

    def get_state(self, name: str) -> CircuitState:
        return self._circuit(name).state

    def get_status(self) -> dict[str, dict[str, Any]]:
        """Snapshot of every known circuit."""
        now = self._clock()
        status = {}
        for name, circuit in self._circuits.items():
            self._prune(circuit, now)
            status[name] = {
                "state": circuit.state.value,
                "recent_failures": len(circuit.failures),
                "total_failures": circuit.total_failures,
                "total_successes": circuit.total_successes,
            }
        return status

    def reset(self, name: str | None = None) -> None:
        """Reset one circuit, or all of them."""
        if name is None:
            self._circuits.clear()
        else:
            self._circuits.pop(name, None)


class ResilientApiClient:
    """Runs flaky requests with timeout, retry, backoff and fallback."""

    def __init__(
        self,
        service: str,
        breaker: CircuitBreaker | None = None,
        sleep: SleepFunc = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.service = service
        self.breaker = breaker or CircuitBreaker()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _delay_for(
        self,
        mode: FailureMode,
        attempt: int,
        retry_after: float | None,
        policy: RetryPolicy,
    ) -> float:
        if mode == FailureMode.RATE_LIMITED:
            if retry_after is not None:
                return min(retry_after, policy.rate_limit_max_delay)
            return self._rng.uniform(policy.rate_limit_min_delay, policy.rate_limit_max_delay)
        if mode == FailureMode.SERVER_ERROR:
            return self._rng.uniform(policy.server_error_min_delay, policy.server_error_max_delay)
        return policy.backoff_delay(attempt, self._rng)

    async def call(
        self,
        request: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        fallback: Callable[[FailureMode, str | None], T],
    ) -> ApiCallResult[T]:
        """
        Run ``request`` under ``policy``.

        Args:
            request: Zero-argument coroutine factory, invoked once per attempt
            policy: Retry policy
            fallback: Builds the substitute value from the failure mode and
                last error message

        Returns:
            ApiCallResult holding the response, or the fallback value with
            ``fallback=True``. Never raises for request failures.
        """
        if not self.breaker.allow_request(self.service):
            logger.warning("external_api_circuit_open", service=self.service)
            record_external_api_attempt(self.service, FailureMode.CIRCUIT_OPEN.value)
            return ApiCallResult(
                value=fallback(FailureMode.CIRCUIT_OPEN, "circuit open"),
                fallback=True,
                failure_mode=FailureMode.CIRCUIT_OPEN,
                last_error="circuit open",
            )

        attempts: list[AttemptRecord] = []
        last_mode = FailureMode.UNEXPECTED
        last_error: str | None = None

        for attempt in range(1, policy.max_attempts + 1):
            start = time.perf_counter()
            try:
                value = await asyncio.wait_for(request(), timeout=policy.attempt_timeout)
            except Exception as e:
                elapsed_ms = int((time.perf_counter() - start) * 1000)
                last_mode, retry_after = classify_failure(e)
                last_error = describe_exception(e)
                record = AttemptRecord(
                    attempt=attempt,
                    outcome=last_mode.value,
                    elapsed_ms=elapsed_ms,
                    error=last_error,
                )
                attempts.append(record)
                record_external_api_attempt(self.service, last_mode.value)

                if last_mode not in RETRYABLE_MODES or attempt >= policy.max_attempts:
                    logger.warning(
                        "external_api_attempts_exhausted",
                        service=self.service,
                        attempt=attempt,
                        failure_mode=last_mode.value,
                        error=last_error,
                    )
                    break

                delay = self._delay_for(last_mode, attempt, retry_after, policy)
                record.delay_before_next = delay
                logger.warning(
                    "external_api_attempt_failed",
                    service=self.service,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    failure_mode=last_mode.value,
                    retry_after=retry_after,
                    delay_seconds=round(delay, 3),
                    error=last_error,
                )
                await self._sleep(delay)
                continue

            attempts.append(
                AttemptRecord(
                    attempt=attempt,
                    outcome="success",
                    elapsed_ms=int((time.perf_counter() - start) * 1000),
                )
            )
            record_external_api_attempt(self.service, "success")
            self.breaker.record_success(self.service)
            if attempt > 1:
                logger.info("external_api_recovered", service=self.service, attempt=attempt)
            return ApiCallResult(value=value, attempts=attempts)

        # A 4xx means the service answered; only availability failures trip the breaker
        if last_mode == FailureMode.CLIENT_ERROR:
            self.breaker.record_success(self.service)
        else:
            self.breaker.record_failure(self.service)

        return ApiCallResult(
            value=fallback(last_mode, last_error),
            fallback=True,
            failure_mode=last_mode,
            last_error=last_error,
            attempts=attempts,
        )
