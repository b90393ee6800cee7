"""
Database session management for the Shipyard API server.

A single Database object owns the async engine and session factory. It is
created once in the application lifespan and handed to everything that needs
persistence (the step executor, request dependencies) rather than living in a
module global.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shipyard.db.models import Base
from shipyard.logging_config import get_logger

logger = get_logger(__name__)


class Database:
    """Async engine + session factory for one database URL."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    @classmethod
    def from_url(
        cls,
        url: str,
        echo: bool = False,
        pool_size: int = 10,
        max_overflow: int = 20,
    ) -> "Database":
        kwargs: dict = {"echo": echo, "pool_pre_ping": True}
        # sqlite uses a static/singleton pool that rejects sizing arguments
        if not url.startswith("sqlite"):
            kwargs.update(pool_size=pool_size, max_overflow=max_overflow)
        return cls(create_async_engine(url, **kwargs))

    async def connect(self, create_tables: bool = False) -> None:
        """Verify connectivity, optionally creating the schema."""
        logger.info("Initializing database connection")
        async with self.engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if create_tables:
                await conn.run_sync(Base.metadata.create_all)
                logger.info("Database tables ensured")
        logger.info("Database connection established")

    async def close(self) -> None:
        """Close database connection pool."""
        logger.info("Closing database connection pool")
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Unit-of-work session: commit on success, roll back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def health(self) -> bool:
        """Check database health for readiness probe."""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False


def get_database(request: Request) -> Database:
    """Return the Database installed on the app by the lifespan handler."""
    database = getattr(request.app.state, "database", None)
    if database is None:
        raise RuntimeError("Database not initialized; lifespan has not run")
    return database


async def get_db(request: Request) -> AsyncGenerator[AsyncSession]:
    """
    Dependency that provides a read-write database session.

    Usage:
        @router.get("/applications")
        async def list_apps(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_database(request).session() as session:
        yield session
