"""
Database Connection Management
Async SQLAlchemy engine and sessions for the claim submission store
Source: https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html
Verified: 2025-12-18
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from src.api.config import settings
from src.utils.logging import get_logger

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str) -> dict[str, Any]:
    """
    Pool options for the configured database.

    Testing runs without a pool; NullPool rejects the sizing arguments.
    SQLite connections are shared across the event loop thread.
    """
    options: dict[str, Any] = {"echo": settings.DEBUG}
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    if settings.is_testing:
        options["poolclass"] = NullPool
        return options

    options.update(
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_pre_ping=True,
    )
    return options


def get_engine() -> AsyncEngine:
    """Global async engine, created on first use."""
    global _engine

    if _engine is None:
        url = settings.database_url
        # Never log credentials
        logger.info(f"Creating database engine: {url.split('@')[-1]}")
        _engine = create_async_engine(url, **_engine_options(url))

    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """
    Global session factory.

    Objects stay loaded after commit so services can return them to the
    route layer; flushes are issued explicitly by the services.
    """
    global _async_session_maker

    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    return _async_session_maker


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding one session per request.

    Commits when the request handler returns normally and rolls back on any
    exception. Workflow steps that must persist an error state before
    surfacing it commit on their own.

    Example:
        >>> @router.get("/api/claim-submissions")
        >>> async def list_claims(session: AsyncSession = Depends(get_session)):
        >>>     result = await session.execute(select(ClaimSubmission))
        >>>     return result.scalars().all()
    """
    async with get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Database session error: {e}")
            raise


async def init_models() -> None:
    """
    Create all tables that do not exist yet.

    Intended for local development and first boot; production schemas are
    managed outside the application.
    """
    from src.models import Base

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


async def close_db_connection() -> None:
    """Dispose of the engine on application shutdown."""
    global _engine, _async_session_maker

    if _engine is None:
        return

    await _engine.dispose()
    _engine = None
    _async_session_maker = None
    logger.info("Database connection pool closed")


async def check_db_connection() -> bool:
    """Run ``SELECT 1``; False when the database is unreachable."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
    return True
