"""Health check endpoints."""

import time
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, Request, Response
from pydantic import BaseModel, Field
from redis import Redis
from sqlalchemy import text

from api.config import get_settings
from api.database import async_session_maker
from api.metrics import get_metrics, get_metrics_content_type

router = APIRouter(tags=["Health"])
logger = structlog.get_logger()

VERSION = "0.1.0"

# Track server start time for uptime calculation
_server_start_time = time.time()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Health status: healthy, degraded, unhealthy")
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str = Field(..., description="API version")
    uptime_seconds: int = Field(..., description="Server uptime in seconds")


class DependencyCheck(BaseModel):
    """Individual dependency check result."""

    status: str = Field(..., description="Status: healthy, unhealthy")
    latency_ms: float | None = Field(None, description="Check latency in milliseconds")
    error: str | None = Field(None, description="Error message if unhealthy")


class EngineStatus(BaseModel):
    """In-process analysis engine state."""

    active_analyses: int
    progress_records: int
    subscribers: int
    circuits: dict[str, dict[str, Any]] = Field(default_factory=dict)


class ReadyResponse(BaseModel):
    """Readiness check response with dependency status."""

    status: str = Field(..., description="Overall status")
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str = Field(..., description="API version")
    uptime_seconds: int = Field(..., description="Server uptime in seconds")
    checks: dict[str, DependencyCheck] = Field(..., description="Individual dependency checks")
    engine: EngineStatus | None = None


class ApiInfoResponse(BaseModel):
    """API information response."""

    name: str
    version: str
    env: str
    docs: str | None


def _uptime() -> int:
    return int(time.time() - _server_start_time)


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Basic health check endpoint.

    Returns healthy if the API is running. Does not check dependencies.
    Use /ready for full dependency checks.
    """
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC).isoformat(),
        version=VERSION,
        uptime_seconds=_uptime(),
    )


@router.get("/ready", response_model=ReadyResponse)
async def readiness_check(request: Request) -> ReadyResponse:
    """
    Readiness check with dependency verification.

    Checks:
    - Database connectivity and latency
    - Redis connectivity and latency (used by the reaper scheduler)
    """
    settings = get_settings()
    checks: dict[str, DependencyCheck] = {}

    try:
        start = time.perf_counter()
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = DependencyCheck(
            status="healthy",
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        checks["database"] = DependencyCheck(status="unhealthy", error=str(e))

    try:
        start = time.perf_counter()
        redis = Redis.from_url(str(settings.redis_url), socket_timeout=2)
        redis.ping()
        redis.close()
        checks["redis"] = DependencyCheck(
            status="healthy",
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )
    except Exception as e:
        logger.warning("Redis health check failed", error=str(e))
        checks["redis"] = DependencyCheck(status="unhealthy", error=str(e))

    # The database is required; Redis only feeds the periodic sweep
    if checks["database"].status == "unhealthy":
        overall_status = "unhealthy"
    elif checks["redis"].status == "unhealthy":
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    engine_status = None
    engine = getattr(request.app.state, "engine", None)
    if engine is not None:
        engine_status = EngineStatus(
            active_analyses=engine.orchestrator.active_analyses,
            progress_records=len(engine.registry),
            subscribers=engine.registry.subscriber_count,
            circuits=engine.breaker.get_status(),
        )

    return ReadyResponse(
        status=overall_status,
        timestamp=datetime.now(UTC).isoformat(),
        version=VERSION,
        uptime_seconds=_uptime(),
        checks=checks,
        engine=engine_status,
    )


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus metrics."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


@router.get("/", response_model=ApiInfoResponse)
async def root() -> ApiInfoResponse:
    """Root endpoint with API information."""
    settings = get_settings()
    return ApiInfoResponse(
        name="Website Effectiveness Analyzer API",
        version=VERSION,
        env=settings.env,
        docs="/docs" if settings.debug else None,
    )
