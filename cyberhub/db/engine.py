"""
Database engine and session factory.

Builds the async SQLAlchemy engine used by :class:`cyberhub.client.CyberHubClient`
for both SQLite (``sqlite+aiosqlite``) and PostgreSQL (``postgresql+asyncpg``).
Creates tables on init if they do not exist.
"""

import logging
from typing import Any, Dict

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""

    pass


def normalize_database_url(database_url: str) -> str:
    """Rewrite plain PostgreSQL URLs to the asyncpg driver.

    PaaS providers hand out ``postgres://`` or ``postgresql://`` URLs which
    default to a sync driver in SQLAlchemy.
    """
    url = database_url
    if url.startswith("postgres://"):
        url = "postgresql+asyncpg://" + url[len("postgres://"):]
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("sqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    """SQLite ships with foreign keys off; every connection turns them on."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_async_engine(database_url: str, pool_size: int = 10, echo: bool = False) -> AsyncEngine:
    """Create an async SQLAlchemy engine for the given database URL.

    Args:
        database_url: Connection URL (``sqlite+aiosqlite://`` or PostgreSQL).
        pool_size: Connection pool size (ignored for SQLite).
        echo: Echo SQL to the ``sqlalchemy.engine`` logger.

    Returns:
        AsyncEngine instance.
    """
    url = normalize_database_url(database_url)
    kwargs: Dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if _is_memory_sqlite(url):
            # StaticPool ensures all connections share the same in-memory database
            kwargs["poolclass"] = StaticPool
    else:
        kwargs.update(pool_size=pool_size, max_overflow=10, pool_pre_ping=True)

    engine = create_async_engine(url, **kwargs)
    if url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    logger.info("Async DB engine created", extra={"dialect": engine.dialect.name})
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to the engine.

    Args:
        engine: Async SQLAlchemy engine.

    Returns:
        Session factory (call to get a new AsyncSession).
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables if they do not exist.

    Idempotent: safe to call on every startup.

    Args:
        engine: Async SQLAlchemy engine.
    """
    from cyberhub.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured", extra={})


async def drop_db(engine: AsyncEngine) -> None:
    """Drop every table known to the metadata (tests and ``init-db --reset``)."""
    from cyberhub.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.info("Database tables dropped", extra={})
