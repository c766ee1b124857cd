"""Database engine configuration for the mail-piece queue."""

from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from ..config.settings import get_settings
from .models import Base

logger = structlog.get_logger(__name__)


def get_database_url() -> str:
    """Get database connection URL from settings."""
    return get_settings().ingest.database_url


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create an async engine for ``database_url`` (settings default)."""
    url = database_url or get_database_url()
    # hide credentials when logging
    logger.info("Creating database engine", url=url.split("@")[-1])
    return create_async_engine(url, echo=False, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to ``engine``."""
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")
