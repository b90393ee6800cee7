"""
Health check endpoints for the Shipyard API server.

Provides /health (liveness) and /ready (readiness) endpoints.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Request, Response, status

from shipyard.logging_config import get_logger
from shipyard.redis.client import get_redis_health

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict[str, str | bool]:
    """Liveness probe endpoint.

    Returns 200 if the API server is running.
    """
    return {"success": True, "status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready(request: Request, response: Response) -> dict:
    """Readiness probe endpoint.

    Checks the database and Redis.
    """
    checks: dict[str, str] = {}

    database = getattr(request.app.state, "database", None)
    database_ok = database is not None and await database.health()
    checks["database"] = "healthy" if database_ok else "unhealthy"
    checks["redis"] = "healthy" if await get_redis_health() else "unhealthy"

    all_healthy = all(v == "healthy" for v in checks.values())

    if not all_healthy:
        logger.warning("Readiness check failed", checks=checks)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"success": False, "status": "not ready", "checks": checks}

    return {"success": True, "status": "ready", "checks": checks}
