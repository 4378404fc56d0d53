"""Tests for Sentry integration module."""

from unittest.mock import patch

from fastapi import HTTPException

from api.exceptions import NotFoundError, RateLimitError
from api.sentry import (
    _before_send,
    _before_send_transaction,
    capture_exception,
    init_sentry,
    set_context,
)


class TestBeforeSend:
    """Tests for the before_send filter function."""

    def test_filters_4xx_http_exceptions(self):
        exc = HTTPException(status_code=404, detail="Not found")
        hint = {"exc_info": (HTTPException, exc, None)}

        assert _before_send({"message": "Not found"}, hint) is None

    def test_allows_5xx_http_exceptions(self):
        exc = HTTPException(status_code=500, detail="Server error")
        hint = {"exc_info": (HTTPException, exc, None)}

        assert _before_send({"message": "Server error"}, hint) is not None

    def test_filters_caller_errors(self):
        for exc in (NotFoundError("Run", "abc"), RateLimitError(retry_after=10)):
            hint = {"exc_info": (type(exc), exc, None)}
            assert _before_send({"message": exc.message}, hint) is None

    def test_filters_auth_headers(self):
        event = {
            "request": {
                "headers": {
                    "authorization": "Bearer secret-token",
                    "cookie": "session=abc123",
                    "x-api-key": "api-key-here",
                    "content-type": "application/json",
                }
            }
        }

        result = _before_send(event, {})

        assert result["request"]["headers"]["authorization"] == "[Filtered]"
        assert result["request"]["headers"]["cookie"] == "[Filtered]"
        assert result["request"]["headers"]["x-api-key"] == "[Filtered]"
        assert result["request"]["headers"]["content-type"] == "application/json"

    def test_passes_regular_exceptions(self):
        exc = ValueError("Some error")
        hint = {"exc_info": (ValueError, exc, None)}

        assert _before_send({"message": "Some error"}, hint) is not None

    def test_handles_missing_request(self):
        assert _before_send({"message": "Some error"}, {}) is not None


class TestBeforeSendTransaction:
    """Tests for the transaction filter function."""

    def test_filters_probe_paths(self):
        for path in ("/health", "/ready", "/metrics"):
            assert _before_send_transaction({"transaction": path}, {}) is None, path

    def test_allows_api_transactions(self):
        event = {"transaction": "/v1/effectiveness/refresh/{client_id}"}

        assert _before_send_transaction(event, {}) is not None


class TestSentryHelpers:
    """Tests for Sentry helper functions when not initialized."""

    def test_set_context_when_not_initialized(self):
        # Should not raise when Sentry is not initialized
        set_context("run", {"run_id": "abc"})

    def test_capture_exception_when_not_initialized(self):
        assert capture_exception(ValueError("test")) is None


class TestInitSentry:
    """Tests for Sentry initialization."""

    @patch("api.sentry.get_settings")
    def test_skips_when_no_dsn(self, mock_settings):
        mock_settings.return_value.sentry_dsn = None

        assert init_sentry() is False

    @patch("api.sentry.sentry_sdk.init")
    @patch("api.sentry.get_settings")
    def test_initializes_with_filters(self, mock_settings, mock_init):
        mock_settings.return_value.sentry_dsn = "https://key@sentry.example/1"
        mock_settings.return_value.env = "test"
        mock_settings.return_value.is_production = False

        with patch("api.sentry._sentry_initialized", False):
            assert init_sentry() is True

        kwargs = mock_init.call_args.kwargs
        assert kwargs["environment"] == "test"
        assert kwargs["before_send"] is _before_send
        assert kwargs["before_send_transaction"] is _before_send_transaction
        assert kwargs["traces_sample_rate"] == 1.0
