"""
Redis client management for the Shipyard API server.

Redis holds the per-application step leases. Follows the same lifecycle
pattern as db/session.py: created once in the lifespan handler.
"""

import redis.asyncio as aioredis

from shipyard.logging_config import get_logger

logger = get_logger(__name__)

# Module-level client reference, initialized in lifespan
_redis: aioredis.Redis | None = None


async def init_redis(url: str) -> aioredis.Redis:
    """Initialize Redis connection pool."""
    global _redis  # noqa: PLW0603
    logger.info("Initializing Redis connection")
    _redis = aioredis.from_url(url, decode_responses=True)
    # Test connection
    await _redis.ping()
    logger.info("Redis connection established")
    return _redis


async def close_redis() -> None:
    """Close Redis connection pool."""
    global _redis  # noqa: PLW0603
    if _redis is not None:
        logger.info("Closing Redis connection pool")
        await _redis.aclose()
        _redis = None


def get_redis_client() -> aioredis.Redis:
    """Return the Redis client. Raises if not initialized."""
    if _redis is None:
        raise RuntimeError("Redis client not initialized; call init_redis() first")
    return _redis


async def get_redis_health() -> bool:
    """Check Redis health for readiness probe."""
    try:
        if _redis is None:
            return False
        await _redis.ping()
        return True
    except Exception as e:
        logger.error("Redis health check failed", error=str(e))
        return False
