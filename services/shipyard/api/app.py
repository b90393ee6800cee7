"""
FastAPI application factory for the Shipyard provisioning API.

Uses lifespan handler for startup/shutdown with async resource management.
"""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shipyard.config import settings
from shipyard.db.session import Database
from shipyard.errors import ShipyardError
from shipyard.logging_config import configure_logging, get_logger
from shipyard.redis.client import close_redis, init_redis
from shipyard.services.encryption_service import init_encryption
from shipyard.steps.executor import StepExecutor

from .health import router as health_router

logger = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan handler for startup and shutdown."""
    # Startup
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    logger.info("Starting Shipyard API server", version=VERSION)

    database = Database.from_url(
        settings.database_url,
        echo=settings.debug,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
    )
    await database.connect(create_tables=settings.database.create_tables)
    app.state.database = database
    logger.info("Database initialized")

    await init_redis(str(settings.redis_url))
    logger.info("Redis initialized")

    init_encryption(settings.encryption_key)

    app.state.executor = StepExecutor(database.session_factory, settings)
    logger.info("Step executor ready")

    yield

    # Shutdown
    logger.info("Shutting down Shipyard API server")
    await close_redis()
    await database.close()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Shipyard API",
        description="Shipyard - server provisioning and deployment steps",
        version=VERSION,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )

    # CORS middleware
    if settings.cors.allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.allow_origins,
            allow_credentials=settings.cors.allow_credentials,
            allow_methods=settings.cors.allow_methods,
            allow_headers=settings.cors.allow_headers,
        )

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Ensure every request has a request ID for logging correlation."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        structlog.contextvars.unbind_contextvars("request_id")

        return response

    @app.exception_handler(ShipyardError)
    async def shipyard_exception_handler(request: Request, exc: ShipyardError) -> JSONResponse:
        """Typed errors carry their own HTTP status."""
        logger.info(
            "Request failed",
            error_type=type(exc).__name__,
            status=exc.http_status,
            error=exc.message,
            path=str(request.url.path),
        )
        content = {"success": False, "error": exc.message}
        missing = exc.detail.get("missing")
        if missing:
            content["missing"] = missing
        return JSONResponse(status_code=exc.http_status, content=content)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid request: {problems}"})

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error("Unhandled exception", exc_info=exc, path=str(request.url.path))
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc) or "Internal server error"},
        )

    # Health endpoints (no prefix)
    app.include_router(health_router)

    from shipyard.api.routers.connection import router as connection_router

    app.include_router(connection_router, prefix=settings.api_prefix)

    from shipyard.api.routers.steps import router as steps_router

    app.include_router(steps_router, prefix=settings.api_prefix)

    from shipyard.api.routers.applications import router as applications_router

    app.include_router(applications_router, prefix=settings.api_prefix)

    from shipyard.api.routers.github import router as github_router

    app.include_router(github_router, prefix=settings.api_prefix)

    return app


# Application instance
app = create_application()
