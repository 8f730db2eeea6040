"""Database configuration and connection management."""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from clinic_scheduler.config import settings


def to_async_url(url: str) -> str:
    """Convert a sync PostgreSQL URL to its asyncpg form."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def build_engine(url: str) -> AsyncEngine:
    """Create the async engine with pooling suited to the backend."""
    url = to_async_url(url)
    options: dict[str, Any] = {
        "echo": settings.debug,
        "isolation_level": settings.database_isolation_level,
    }

    if url.startswith("postgresql+asyncpg://"):
        options.update(
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            pool_recycle=3600,
            connect_args={
                "server_settings": {
                    "application_name": settings.app_name,
                },
            },
        )

    return create_async_engine(url, **options)


engine: AsyncEngine = build_engine(settings.database_url)

# Async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


EXCLUSION_VIOLATION = "23P01"

# serialization_failure, deadlock_detected, exclusion_violation
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", EXCLUSION_VIOLATION})


def sqlstate(exc: DBAPIError) -> str | None:
    """SQLSTATE code of the driver error, when the driver exposes one."""
    return getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)


def is_transient_error(exc: BaseException) -> bool:
    """
    Check whether a store error is worth retrying.

    An exclusion violation is retried so the overlap check runs again and
    reports the appointment that won the race.
    """
    if not isinstance(exc, DBAPIError):
        return False

    if exc.connection_invalidated:
        return True

    if sqlstate(exc) in TRANSIENT_SQLSTATES:
        return True

    # SQLite reports writer contention as "database is locked"
    return isinstance(exc, OperationalError) and "locked" in str(exc.orig).lower()


async def check_database_connection() -> bool:
    """Check if database connection is healthy."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
