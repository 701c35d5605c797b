"""
Database connection and session management.

Uses SQLAlchemy async. There is no module-level engine: each caller (the API
app, a Celery task, a test) builds its own engine and session factory and
passes the factory explicitly to the sync service.

Connection Pool Strategy:
- PostgreSQL (asyncpg): local connection pool with pre-ping and recycling
- SQLite (aiosqlite): a single shared connection, foreign keys enforced
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine for ``database_url``."""
    if database_url.startswith("sqlite"):
        engine: AsyncEngine = create_async_engine(
            database_url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        logger.info("Database engine created for SQLite (shared connection)")
        return engine

    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,        # Base connections kept warm
        max_overflow=10,    # Up to 15 total under burst load
        pool_recycle=300,   # Recycle connections every 5 min
        pool_pre_ping=True, # Verify connection is alive before checkout
    )
    logger.info("Database engine created with connection pool (pool_size=5, max_overflow=10)")
    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory that sync runs receive as their store handle."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,  # Don't auto-flush, we control when to commit
    )


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session from ``session_factory``.

    Uncommitted changes are rolled back on error and the session is always
    closed. Commits are explicit.

    Usage:
        async with session_scope(factory) as session:
            result = await session.execute(query)
            await session.commit()
    """
    session: AsyncSession = session_factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


def utcnow() -> datetime:
    """Naive UTC now; every DateTime column in this schema stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables."""
    # Import for side effects: registers every model on Base.metadata
    import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Dispose the engine and release all pooled connections."""
    await engine.dispose()
    logger.info("Database engine disposed, all connections closed")
