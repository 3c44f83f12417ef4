"""Database engine and per-request sessions.

A :class:`Database` is opened once per process (by the API lifespan or a CLI
command) and kept on ``app.state``. There is no module-level engine.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine as sa_create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./threeds_gateway.db"

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def get_database_url(database_url: Optional[str] = None) -> str:
    """Resolve the database URL, switching PostgreSQL URLs to asyncpg.

    Falls back to ``DATABASE_URL`` and then to a local SQLite file.
    """
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        return DEFAULT_DATABASE_URL
    for prefix, async_prefix in _ASYNC_DRIVERS:
        if url.startswith(prefix):
            return async_prefix + url[len(prefix):]
    return url


def create_async_engine(database_url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    url = get_database_url(database_url)
    if url.startswith("sqlite"):
        # one shared connection keeps an in-memory database alive across sessions
        return sa_create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return sa_create_async_engine(url, echo=echo, pool_pre_ping=True)


def get_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


class Database:
    """Engine plus session factory for one gateway process.

    Args:
        database_url: Connection URL; resolved through :func:`get_database_url`.
        echo: Log every SQL statement.
    """

    def __init__(self, database_url: Optional[str] = None, echo: bool = False):
        self.url = get_database_url(database_url)
        self.engine = create_async_engine(self.url, echo=echo)
        self.session_factory = get_async_session_factory(self.engine)

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database tables ready ({self.engine.url.get_backend_name()})")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session that commits on normal exit and rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def dispose(self) -> None:
        await self.engine.dispose()


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a session from ``app.state.database``."""
    async with request.app.state.database.session() as session:
        yield session
