import asyncio
import logging
from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from medivault.config import settings
from medivault.models import Base

logger = logging.getLogger("medivault.database")

MAX_RETRY_DELAY_SECONDS = 10.0

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_timeout=30,
    pool_recycle=settings.database_pool_recycle,
    pool_pre_ping=settings.database_pool_pre_ping,
)

# expire_on_commit=False: stores commit mid-request (OTP consumption) and the
# caller keeps using the returned rows afterwards.
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


def _retry_delay(attempt: int) -> float:
    return min(settings.database_init_retry_delay_seconds * attempt, MAX_RETRY_DELAY_SECONDS)


async def _prepare_schema() -> None:
    async with engine.begin() as conn:
        if settings.debug:
            await conn.run_sync(Base.metadata.create_all)
        else:
            logger.info("Skipping create_all in non-debug mode; run Alembic migrations.")


async def init_db() -> None:
    """Wait for the database, creating tables in debug mode.

    Retries ``database_init_retries`` times with a linearly growing delay, so
    the API can start alongside a Postgres container that is still booting.
    """
    total_attempts = settings.database_init_retries + 1
    for attempt in range(1, total_attempts + 1):
        try:
            await _prepare_schema()
        except Exception as exc:
            if attempt >= total_attempts:
                logger.exception("Database initialization failed after %d attempts", attempt)
                raise
            delay_seconds = _retry_delay(attempt)
            logger.warning(
                "Database initialization attempt %d/%d failed (%s). Retrying in %.1fs.",
                attempt,
                total_attempts,
                exc.__class__.__name__,
                delay_seconds,
            )
            await asyncio.sleep(delay_seconds)
        else:
            if attempt > 1:
                logger.info("Database initialized after %d attempts", attempt)
            return


async def ping_db() -> bool:
    """True when a trivial query round-trips."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Database ping failed", exc_info=True)
        return False
    return True


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; whatever the handler left pending is committed."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
