"""
Async database access
One Database per engine instance; sessions are handed to request handlers
through the per-request context rather than a module-level global.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator
import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

logger = logging.getLogger(__name__)


class Database:
    """Owns the async engine and session factory."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        connect_args = {}
        if url.startswith("sqlite"):
            # Writers wait on the sqlite file lock instead of failing fast
            connect_args["timeout"] = 30
        self.engine: AsyncEngine = create_async_engine(
            url, echo=echo, connect_args=connect_args
        )
        self._sessionmaker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    @property
    def supports_row_locks(self) -> bool:
        return not self.url.startswith("sqlite")

    async def create_all(self) -> None:
        """Create tables for all registered SQLModel tables."""
        # Import for side effects: registers table metadata
        from contest_engine.models import contest, portfolio, trade  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Database schema ready")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        session = self._sessionmaker()
        try:
            yield session
        finally:
            await session.close()

    async def close(self) -> None:
        await self.engine.dispose()
