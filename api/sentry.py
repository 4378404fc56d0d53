"""Sentry error tracking integration."""

from __future__ import annotations

import sentry_sdk
import structlog
from fastapi import HTTPException
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from api.config import get_settings
from api.exceptions import EffectivenessError

logger = structlog.get_logger(__name__)

# Flag to track if Sentry is initialized
_sentry_initialized = False

# Transactions not worth tracing
_IGNORED_TRANSACTIONS = {"/health", "/ready", "/metrics"}


def init_sentry() -> bool:
    """Initialize Sentry SDK if configured.

    Returns True if Sentry was initialized, False otherwise.
    """
    global _sentry_initialized

    settings = get_settings()

    if not settings.sentry_dsn:
        logger.info("Sentry DSN not configured, skipping initialization")
        return False

    if _sentry_initialized:
        return True

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.env,
        release="effectiveness@0.1.0",
        # Capture 100% of errors
        sample_rate=1.0,
        # Capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1 if settings.is_production else 1.0,
        send_default_pii=False,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            HttpxIntegration(),
            AsyncioIntegration(),
            LoggingIntegration(
                level=None,  # Capture all logs as breadcrumbs
                event_level=None,  # Don't create events for logs
            ),
        ],
        before_send=_before_send,
        before_send_transaction=_before_send_transaction,
    )

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=settings.env)
    return True


def _before_send(event: dict, hint: dict) -> dict | None:
    """Filter or modify events before sending to Sentry."""
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]

        # Don't report 4xx errors as they're usually caller errors
        if isinstance(exc_value, HTTPException) and 400 <= exc_value.status_code < 500:
            return None
        if isinstance(exc_value, EffectivenessError) and exc_value.status_code < 500:
            return None

    if "request" in event:
        headers = event["request"].get("headers", {})
        for header in ("authorization", "cookie", "x-api-key"):
            if header in headers:
                headers[header] = "[Filtered]"

    return event


def _before_send_transaction(event: dict, hint: dict) -> dict | None:  # noqa: ARG001
    """Drop health check and metrics transactions."""
    if event.get("transaction") in _IGNORED_TRANSACTIONS:
        return None
    return event


def capture_exception(exception: Exception) -> str | None:
    """Capture an exception and send to Sentry.

    Returns the event ID if captured, None otherwise.
    """
    if not _sentry_initialized:
        return None
    event_id: str | None = sentry_sdk.capture_exception(exception)
    return event_id


def set_context(name: str, data: dict) -> None:
    """Set additional context for Sentry events."""
    if not _sentry_initialized:
        return
    sentry_sdk.set_context(name, data)
