"""Database engine and session factory construction."""
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tip_reconciliation.config import Settings, get_settings
from tip_reconciliation.database.models import Base


def create_engine(settings: Optional[Settings] = None, **overrides) -> AsyncEngine:
    """
    Create the database engine.

    Pool settings apply to server databases only; SQLite URLs get the
    driver defaults.

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    settings = settings or get_settings()
    options = {"echo": settings.database_echo}
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,  # Recycle connections after 1 hour
        )
    options.update(overrides)
    return create_async_engine(settings.database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create a session factory bound to an engine.

    Returns:
        async_sessionmaker: SQLAlchemy async session factory
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """
    Initialize database tables.

    Creates all tables defined in models if they don't exist.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections and dispose of the engine."""
    await engine.dispose()
