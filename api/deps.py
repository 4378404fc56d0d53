"""FastAPI dependencies for dependency injection."""

from typing import Annotated

from fastapi import Depends, Request
from redis import Redis

from api.config import Settings, get_settings
from api.database import DbSession
from worker.effectiveness.engine import EffectivenessEngine

# Re-export DbSession for convenience
__all__ = ["DbSession", "SettingsDep", "RedisDep", "EngineDep"]


# Settings dependency
SettingsDep = Annotated[Settings, Depends(get_settings)]


def get_redis() -> Redis:
    """Get Redis connection."""
    settings = get_settings()
    return Redis.from_url(str(settings.redis_url), decode_responses=True)


RedisDep = Annotated[Redis, Depends(get_redis)]


def get_engine(request: Request) -> EffectivenessEngine:
    """Effectiveness engine created by the application lifespan."""
    engine: EffectivenessEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("Effectiveness engine is not running")
    return engine


EngineDep = Annotated[EffectivenessEngine, Depends(get_engine)]
