"""
Database Session Management
===========================

Provides async database session factory and dependency injection.

Includes ``LazyDB``, a lightweight wrapper that defers opening a real
DB session until the first call to ``await lazy.get()``. The
entitlement read endpoint uses it so a Redis cache hit pays no DB
overhead.
"""

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Pool settings:
    - pool_size / max_overflow: 10 + 20, webhook bursts are short
    - pool_recycle: 5 minutes, matches PgBouncer idle timeouts
    - pool_use_lifo: reuse the most recently returned connection first
    """
    global _engine

    if _engine is None:
        if not settings.database_url_async:
            raise ValueError(
                "Database URL not configured. "
                "Please set SUPABASE_DATABASE_URL environment variable."
            )

        _engine = create_async_engine(
            settings.database_url_async,
            echo=settings.is_development,
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=False,
            pool_recycle=300,
            pool_use_lifo=True,
            pool_timeout=30,
        )

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_factory

    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    return _async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a database session.

    The session is committed on success or rolled back on error.
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


class LazyDB:
    """
    Lazy database session wrapper.

    No DB connection is opened until ``await lazy.get()`` is called.
    """

    def __init__(self) -> None:
        self._session: Optional[AsyncSession] = None

    async def get(self) -> AsyncSession:
        """Return (and lazily create) the underlying session."""
        if self._session is None:
            factory = get_session_factory()
            self._session = factory()
        return self._session

    async def close(self, *, commit: bool = True) -> None:
        """Commit/rollback and close the session if it was ever opened."""
        if self._session is not None:
            try:
                if commit:
                    await self._session.commit()
                else:
                    await self._session.rollback()
            finally:
                await self._session.close()
                self._session = None


async def get_lazy_db() -> AsyncGenerator[LazyDB, None]:
    """FastAPI dependency that provides a lazy DB session."""
    lazy = LazyDB()
    try:
        yield lazy
    except Exception:
        await lazy.close(commit=False)
        raise
    else:
        await lazy.close(commit=True)


async def init_db() -> None:
    """
    Initialize database connection.

    Called on application startup; runs a trivial query so the first
    webhook does not pay connection setup latency.
    """
    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established")


async def close_db() -> None:
    """Close database connections on shutdown."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connections closed")
