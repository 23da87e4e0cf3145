"""Async engine and session factory."""

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shopcrawl.config import settings
from shopcrawl.db.models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str | None = None, **kwargs) -> AsyncEngine:
    """Create an async engine for the configured database."""
    return create_async_engine(
        database_url or settings.database_url,
        echo=settings.db_echo,
        **kwargs,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with expire_on_commit disabled so records stay usable after commit."""
    return async_sessionmaker(bind, expire_on_commit=False)


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all tables (no migrations)."""
    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")
