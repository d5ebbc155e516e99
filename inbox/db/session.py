"""Async database session management."""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from inbox.config import get_settings

settings = get_settings()


def _engine_options(database_url: str) -> dict[str, Any]:
    """Engine keyword arguments; SQLite has no sized connection pool."""
    options: dict[str, Any] = {"pool_pre_ping": True, "echo": settings.app_debug}
    if not database_url.startswith("sqlite"):
        options["pool_size"] = settings.database_pool_size
    return options


engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))

# Shared by request handlers, webhook background tasks and the cleanup loop
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that provides a session committed when the request succeeds."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_engine() -> None:
    """Close pooled connections on shutdown."""
    await engine.dispose()
