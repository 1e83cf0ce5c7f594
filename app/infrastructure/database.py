"""
Database setup and session management.
"""

import os

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.config.settings import get_settings
from app.domain.reminder import Base
from app.domain.dispatch_attempt import DispatchAttempt  # noqa: F401 - needed for table creation
from app.domain.notification import Notification  # noqa: F401 - needed for table creation
from app.domain.task import Task, UserIntegration  # noqa: F401 - needed for table creation

settings = get_settings()


def build_engine(url: str, echo: bool = False):
    """
    Create an async engine for the given URL.

    In-memory SQLite needs a single shared connection (StaticPool); file
    databases get a regular pool so concurrent sessions don't share one
    transaction.
    """
    kwargs = {
        "echo": echo,
        "connect_args": {"check_same_thread": False},
    }
    if ":memory:" in url:
        kwargs["poolclass"] = StaticPool
    return create_async_engine(url, **kwargs)


# Create async engine
engine = build_engine(settings.database_url, echo=settings.debug)

# Session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_database() -> None:
    """Initialize database and create tables."""
    os.makedirs(settings.data_dir, exist_ok=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncSession:
    """Get a new database session."""
    async with async_session_factory() as session:
        yield session


class DatabaseSession:
    """Context manager for database sessions."""

    async def __aenter__(self) -> AsyncSession:
        self.session = async_session_factory()
        return self.session

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None:
            await self.session.rollback()
        await self.session.close()
