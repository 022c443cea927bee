"""Database session factory setup."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import pixelninja.models  # noqa: F401  (registers tables with SQLModel metadata)


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Async connection URL (postgresql+psycopg://... or sqlite+aiosqlite://...)
        pool_size: Maximum number of connections in the pool (ignored for SQLite)

    Returns:
        Async session factory for creating database sessions
    """
    engine_kwargs: dict = {"pool_pre_ping": True, "echo": False}
    if not db_url.startswith("sqlite"):
        engine_kwargs["pool_size"] = pool_size
        engine_kwargs["max_overflow"] = 0  # No overflow beyond pool_size

    engine = create_async_engine(db_url, **engine_kwargs)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )

    return session_factory


async def create_tables(engine: AsyncEngine) -> None:
    """Create the tasks and system_state tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
