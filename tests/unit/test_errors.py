"""Tests for the error taxonomy."""

import json

import httpx
import pytest
from playwright.async_api import Error as PlaywrightError
from sqlalchemy.exc import OperationalError

from api.exceptions import (
    ConflictError,
    EffectivenessError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from worker.effectiveness.errors import (
    AiJudgeError,
    ClientRequestError,
    ErrorCategory,
    ParsingError,
    RateLimitedError,
    ServerError,
    StepError,
    classify_exception,
    describe_exception,
)


class TestClassifyException:
    """Tests for mapping exceptions to category tags."""

    @pytest.mark.parametrize(
        "exc,category",
        [
            (TimeoutError(), ErrorCategory.NETWORK_TIMEOUT),
            (httpx.ConnectTimeout("slow"), ErrorCategory.NETWORK_TIMEOUT),
            (httpx.ConnectError("refused"), ErrorCategory.NETWORK_TIMEOUT),
            (PlaywrightError("Target closed"), ErrorCategory.BROWSER_CRASH),
            (OperationalError("SELECT 1", {}, Exception("gone")), ErrorCategory.DATABASE_ERROR),
            (json.JSONDecodeError("bad", "{", 0), ErrorCategory.PARSING_ERROR),
            (KeyError("score"), ErrorCategory.PARSING_ERROR),
            (RuntimeError("boom"), ErrorCategory.UNKNOWN),
        ],
    )
    def test_builtin_and_library_errors(self, exc, category):
        assert classify_exception(exc) == category

    def test_engine_errors_carry_their_category(self):
        assert classify_exception(AiJudgeError("bad answer")) == ErrorCategory.AI_API_ERROR
        assert classify_exception(ParsingError("no score")) == ErrorCategory.PARSING_ERROR
        assert classify_exception(RateLimitedError()) == ErrorCategory.RATE_LIMITED
        assert classify_exception(ServerError(502)) == ErrorCategory.EXTERNAL_API_ERROR
        assert classify_exception(ClientRequestError(404)) == ErrorCategory.EXTERNAL_API_ERROR

    def test_category_override(self):
        exc = AiJudgeError("429", category=ErrorCategory.RATE_LIMITED)
        assert classify_exception(exc) == ErrorCategory.RATE_LIMITED

    def test_http_status_429_is_rate_limited(self):
        request = httpx.Request("GET", "https://example.com")
        response = httpx.Response(429, request=request)
        exc = httpx.HTTPStatusError("429", request=request, response=response)
        assert classify_exception(exc) == ErrorCategory.RATE_LIMITED


class TestStepError:
    """Tests for tagged step errors."""

    def test_from_exception(self):
        error = StepError.from_exception("tier2", TimeoutError(), criterion="ctas")

        assert error.category == ErrorCategory.NETWORK_TIMEOUT
        assert error.message == "TimeoutError"
        assert error.to_dict() == {
            "step": "tier2",
            "category": "network_timeout",
            "message": "TimeoutError",
            "criterion": "ctas",
        }

    def test_to_dict_omits_missing_criterion(self):
        error = StepError(step="insights", category=ErrorCategory.AI_API_ERROR, message="x")
        assert "criterion" not in error.to_dict()

    def test_describe_never_empty(self):
        assert describe_exception(ValueError("")) == "ValueError"
        assert describe_exception(ValueError(" bad ")) == "bad"


class TestApiExceptions:
    """Tests for HTTP-facing application exceptions."""

    def test_not_found(self):
        exc = NotFoundError("Run", "abc")
        assert exc.status_code == 404
        assert exc.code == "not_found"
        assert "abc" in exc.message

    def test_validation_and_conflict(self):
        assert ValidationError("bad").status_code == 422
        assert ConflictError("busy").status_code == 409

    def test_rate_limit_sets_retry_after_header(self):
        exc = RateLimitError("slow down", retry_after=120)
        assert exc.status_code == 429
        assert exc.headers == {"Retry-After": "120"}

    def test_all_share_base_class(self):
        assert issubclass(RateLimitError, EffectivenessError)
