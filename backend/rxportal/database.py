"""Async engine, session factory and the declarative base.

Every table registers on ``Base``.  Request handlers receive a session via
``get_db``; background jobs and scripts open their own from
``AsyncSessionLocal``.
"""
import logging
from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from rxportal.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Applied both client side (asyncpg) and server side (postgres)
STATEMENT_TIMEOUT_SECONDS = 30


def build_engine(settings: Settings) -> AsyncEngine:
    """Pooled asyncpg engine; dropped connections are replaced via pre-ping."""
    async_engine = create_async_engine(
        settings.DATABASE_URL,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=1800,
        pool_pre_ping=True,
        connect_args={
            "command_timeout": STATEMENT_TIMEOUT_SECONDS,
            "server_settings": {"statement_timeout": str(STATEMENT_TIMEOUT_SECONDS * 1000)},
        },
    )
    sync_engine = async_engine.sync_engine

    @event.listens_for(sync_engine, "checkin")
    def _warn_on_overflow(dbapi_conn, connection_rec):
        pool = sync_engine.pool
        if pool.overflow() > pool.size() * 0.5:
            logger.warning(
                "db_pool: overflow %s is above half of pool_size %s (checked in: %s)",
                pool.overflow(), pool.size(), pool.checkedin(),
            )

    return async_engine


engine = build_engine(get_settings())

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session. Services commit explicitly; errors roll back."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
