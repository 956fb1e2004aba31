"""
Database Session Management - Async SQLAlchemy session factory.

Provides separate read and write database connections.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from promptlens.config import settings


_engines: dict[str, AsyncEngine] = {}
_session_factories: dict[str, async_sessionmaker[AsyncSession]] = {}


def _create_engine(url: str) -> AsyncEngine:
    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        pool_pre_ping=True,
        echo=settings.log_level == "DEBUG",
    )


def get_write_engine() -> AsyncEngine:
    """Get or create the write database engine (primary)."""
    if "write" not in _engines:
        _engines["write"] = _create_engine(settings.database_url)
    return _engines["write"]


def get_read_engine() -> AsyncEngine:
    """Get or create the read database engine (replica, or primary when unset)."""
    if "read" not in _engines:
        _engines["read"] = _create_engine(settings.read_database_url)
    return _engines["read"]


def get_write_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the write session factory.

    expire_on_commit is off so services can hand committed User rows back
    to route handlers without a refresh round trip.
    """
    if "write" not in _session_factories:
        _session_factories["write"] = async_sessionmaker(
            get_write_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _session_factories["write"]


def get_read_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the read session factory."""
    if "read" not in _session_factories:
        _session_factories["read"] = async_sessionmaker(
            get_read_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _session_factories["read"]


@asynccontextmanager
async def get_write_session() -> AsyncIterator[AsyncSession]:
    """
    Get an async database session for write operations outside a request.

    Usage:
        async with get_write_session() as session:
            await session.execute(...)
            await session.commit()
    """
    async with get_write_session_factory()() as session:
        yield session


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for write database session.

    Usage:
        @router.post("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_write_db)):
            ...
    """
    async with get_write_session_factory()() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for read database session."""
    async with get_read_session_factory()() as session:
        yield session


async def close_engines() -> None:
    """Close all database engines (for graceful shutdown)."""
    for name, engine in list(_engines.items()):
        await engine.dispose()
        _engines.pop(name, None)
        _session_factories.pop(name, None)
