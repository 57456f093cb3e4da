"""
Database engine construction and session management.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.exc import OperationalError, DisconnectionError

from analytics_engine.core.config import settings
from analytics_engine.core.logging import get_logger

logger = get_logger(__name__)

# Base class for engine bookkeeping tables (public schema)
Base = declarative_base()

TRANSIENT_ERROR_KEYWORDS = (
    "connection", "timeout", "network", "closed", "lost",
    "server closed", "connection reset"
)


def create_engine(
    url: Optional[str] = None,
    application_name: str = "analytics_engine",
    pool_size: Optional[int] = None,
    max_overflow: Optional[int] = None,
) -> AsyncEngine:
    """
    Create an async engine for the warehouse (or a source database).

    The asyncpg ``command_timeout`` bounds every statement, so a stuck
    extract or load eventually fails instead of hanging a pipeline run.
    """
    return create_async_engine(
        url or settings.DATABASE_URL,
        pool_size=pool_size or settings.DB_POOL_SIZE,
        max_overflow=max_overflow or settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=3600,  # Recycle connections after 1 hour
        echo=False,
        connect_args={
            "command_timeout": settings.DB_COMMAND_TIMEOUT,
            "server_settings": {
                "application_name": application_name,
                "tcp_keepalives_idle": "600",
                "tcp_keepalives_interval": "30",
                "tcp_keepalives_count": "3",
            },
        },
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create an async session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


def is_transient_error(error: Exception) -> bool:
    """Whether a database error looks like a dropped or refused connection."""
    error_str = str(error).lower()
    return any(keyword in error_str for keyword in TRANSIENT_ERROR_KEYWORDS)


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker,
    max_retries: int = 3,
    retry_delay: float = 1.0,
) -> AsyncIterator[AsyncSession]:
    """
    Context manager yielding a session that commits on success.

    Opening the session is retried on transient connection errors. Errors
    raised by the caller's block are never retried: the block may already
    have side effects, so the session is rolled back and the error re-raised.
    """
    session = None
    for attempt in range(max_retries):
        try:
            session = session_factory()
            await session.connection()
            break
        except (OperationalError, DisconnectionError) as e:
            if session is not None:
                await session.close()
                session = None
            if attempt < max_retries - 1 and is_transient_error(e):
                logger.warning(
                    f"Database session creation failed (attempt {attempt + 1}/{max_retries}): {e}. "
                    f"Retrying in {retry_delay * (attempt + 1)}s..."
                )
                await asyncio.sleep(retry_delay * (attempt + 1))
                continue
            logger.error(f"Failed to create database session after {attempt + 1} attempts: {e}")
            raise

    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
