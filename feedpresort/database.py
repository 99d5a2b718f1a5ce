"""
Async SQLAlchemy engine + session factory.

The backing store is MySQL-protocol compatible (TiDB in production), so we
use the aiomysql driver. The engine is created once at startup and reused
across requests, presort jobs and the queue worker.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Integer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from feedpresort.config import settings

logger = logging.getLogger(__name__)

# Autoincrement BIGINT on MySQL, plain INTEGER rowid on sqlite
BigIntId = BigInteger().with_variant(Integer, "sqlite")


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
    }


engine = create_async_engine(settings.db_url, echo=False, **_engine_kwargs(settings.db_url))

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp; DATETIME columns carry no zone."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def init_db() -> None:
    """Create all tables if they don't exist (idempotent)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def get_db():
    """FastAPI dependency that yields an async DB session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker:
    """FastAPI dependency for code that opens its own sessions (hydration)."""
    return AsyncSessionLocal
