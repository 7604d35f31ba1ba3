"""Async engine, session factory and the naive-UTC time helpers."""

import logging
from datetime import date, datetime, time, timezone
from typing import Any, AsyncGenerator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from .config import settings

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")


def engine_options(database_url: str) -> dict[str, Any]:
    """Pool settings for the configured backend."""
    if database_url.startswith("sqlite"):
        # In-memory SQLite only exists on the one connection
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_pre_ping": True,
    }


engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    **engine_options(settings.database_url),
)

# Services commit explicitly; loaded rows stay readable after commit
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def salon_zone(name: str | None) -> ZoneInfo:
    """Zone of a salon; unknown names fall back to UTC."""
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown salon timezone, using UTC", extra={"timezone": name})
        return UTC


def local_to_utc(day: date, value: time, zone: ZoneInfo) -> datetime:
    """Wall-clock time on a salon-local day as naive UTC."""
    return to_naive_utc(datetime.combine(day, value, tzinfo=zone))


def utc_to_local(value: datetime, zone: ZoneInfo) -> datetime:
    """Naive UTC instant as naive salon-local wall-clock time."""
    return value.replace(tzinfo=timezone.utc).astimezone(zone).replace(tzinfo=None)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session dependency.

    Anything left uncommitted when the handler raises is rolled back.
    """
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create missing tables; migrated databases are left as they are."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of pooled connections."""
    await engine.dispose()
