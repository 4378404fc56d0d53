"""Error taxonomy for effectiveness runs.

Failed steps carry a category tag (not just free text) so error rates
can be aggregated per category.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout
from sqlalchemy.exc import SQLAlchemyError


class ErrorCategory(StrEnum):
    """Category tags attached to failed steps."""

    NETWORK_TIMEOUT = "network_timeout"
    AI_API_ERROR = "ai_api_error"
    BROWSER_CRASH = "browser_crash"
    DATABASE_ERROR = "database_error"
    PARSING_ERROR = "parsing_error"
    RATE_LIMITED = "rate_limited"
    EXTERNAL_API_ERROR = "external_api_error"
    UNKNOWN = "unknown"


class AnalysisError(Exception):
    """Base class for engine failures that already know their category."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, category: ErrorCategory | None = None):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category


class BrowserError(AnalysisError):
    """Screenshot or rendering failure."""

    category = ErrorCategory.BROWSER_CRASH


class AiJudgeError(AnalysisError):
    """AI judgment call failed or returned an unusable answer."""

    category = ErrorCategory.AI_API_ERROR


class ParsingError(AnalysisError):
    """Content could not be parsed."""

    category = ErrorCategory.PARSING_ERROR


class AggregationError(AnalysisError):
    """No criterion scores were available to aggregate."""

    category = ErrorCategory.PARSING_ERROR


# Performance API failures, kept distinguishable for the resilient client


class PerformanceApiError(AnalysisError):
    """Base class for performance API failures."""

    retryable = True


class RateLimitedError(PerformanceApiError):
    """HTTP 429, optionally with a Retry-After hint in seconds."""

    category = ErrorCategory.RATE_LIMITED

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class ServerError(PerformanceApiError):
    """HTTP 5xx."""

    category = ErrorCategory.EXTERNAL_API_ERROR

    def __init__(self, status_code: int, message: str | None = None):
        super().__init__(message or f"Server error: HTTP {status_code}")
        self.status_code = status_code


class ApiTimeoutError(PerformanceApiError):
    """Request did not finish within the attempt timeout."""

    category = ErrorCategory.NETWORK_TIMEOUT


class UnreachableError(PerformanceApiError):
    """Connection could not be established."""

    category = ErrorCategory.NETWORK_TIMEOUT


class ClientRequestError(PerformanceApiError):
    """HTTP 4xx other than 429; retrying will not help."""

    retryable = False
    category = ErrorCategory.EXTERNAL_API_ERROR

    def __init__(self, status_code: int, message: str | None = None):
        super().__init__(message or f"Client error: HTTP {status_code}")
        self.status_code = status_code


def classify_exception(exc: BaseException) -> ErrorCategory:
    """Map an exception to its error category."""
    if isinstance(exc, AnalysisError):
        return exc.category
    if isinstance(exc, (TimeoutError, httpx.TimeoutException, PlaywrightTimeout)):
        return ErrorCategory.NETWORK_TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code == 429:
            return ErrorCategory.RATE_LIMITED
        return ErrorCategory.NETWORK_TIMEOUT
    if isinstance(exc, httpx.TransportError):
        return ErrorCategory.NETWORK_TIMEOUT
    if isinstance(exc, PlaywrightError):
        return ErrorCategory.BROWSER_CRASH
    if isinstance(exc, SQLAlchemyError):
        return ErrorCategory.DATABASE_ERROR
    if isinstance(exc, (json.JSONDecodeError, ValueError, KeyError, TypeError)):
        return ErrorCategory.PARSING_ERROR
    return ErrorCategory.UNKNOWN


def describe_exception(exc: BaseException) -> str:
    """Human-readable message for an exception, never empty."""
    message = str(exc).strip()
    if not message:
        message = type(exc).__name__
    return message


@dataclass
class StepError:
    """A failed pipeline step with its category tag."""

    step: str
    category: ErrorCategory
    message: str
    criterion: str | None = None
    failure_mode: str | None = None

    @classmethod
    def from_exception(
        cls,
        step: str,
        exc: BaseException,
        criterion: str | None = None,
    ) -> StepError:
        return cls(
            step=step,
            category=classify_exception(exc),
            message=describe_exception(exc),
            criterion=criterion,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "step": self.step,
            "category": self.category.value,
            "message": self.message,
        }
        if self.criterion:
            data["criterion"] = self.criterion
        if self.failure_mode:
            data["failure_mode"] = self.failure_mode
        return data
