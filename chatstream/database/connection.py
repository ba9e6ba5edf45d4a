"""Async engine and session management."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from chatstream.config import get_settings
from chatstream.database.models import Base

settings = get_settings()


def create_session_factory(
    database_url: str, echo: bool = False
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an engine and a session factory bound to it."""
    engine = create_async_engine(database_url, echo=echo)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine, AsyncSessionLocal = create_session_factory(settings.database_url, settings.database_echo)


async def create_tables(target: AsyncEngine) -> None:
    """Create all tables on the given engine if they do not exist."""
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Create database tables for the application engine."""
    await create_tables(engine)


async def close_db() -> None:
    """Dispose of the application engine's connection pool."""
    await engine.dispose()
