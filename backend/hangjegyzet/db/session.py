from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.db.base_class import Base


def create_engine(config: Optional[Settings] = None, database_url: Optional[str] = None) -> AsyncEngine:
    """
    Create the async engine for the configured database

    SQLite (local runs and tests) gets a NullPool; PostgreSQL uses the
    default pool with pre-ping.
    """
    config = config or default_settings
    url = database_url or config.DATABASE_URL
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=config.DATABASE_ECHO,
            poolclass=NullPool,
            connect_args={"timeout": 30},
        )
    return create_async_engine(url, echo=config.DATABASE_ECHO, pool_pre_ping=True, future=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
