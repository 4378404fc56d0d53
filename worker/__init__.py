"""Website effectiveness analyzer - worker package."""

# Lazy imports to avoid requiring Redis at import time
# Use explicit imports when these are needed:
# from worker.redis import get_redis_connection_bytes, QUEUE_DEFAULT, QUEUE_MAINTENANCE

from typing import Any

__all__ = [
    "get_redis_connection_bytes",
    "QUEUE_DEFAULT",
    "QUEUE_MAINTENANCE",
]


def __getattr__(name: str) -> Any:
    """Lazy import for worker submodules."""
    if name in __all__:
        from worker import redis

        return getattr(redis, name)
    raise AttributeError(f"module 'worker' has no attribute '{name}'")
