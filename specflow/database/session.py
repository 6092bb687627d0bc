"""Database handle using SQLModel + async SQLAlchemy.

The engine is created from explicit settings and owned by a ``Database``
instance that the application connects on startup and disposes on
shutdown; nothing is opened at import time.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from specflow.config import Settings

# Register tables on SQLModel.metadata
from specflow.database import models  # noqa: F401


logger = logging.getLogger(__name__)


class Database:
    """Scoped owner of the async engine and session factory."""

    def __init__(self, settings: Settings):
        self.url = settings.database_url
        self._settings = settings
        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    async def connect(self, create_tables: bool = False) -> None:
        """Create the engine and (optionally) the tables.

        Note: In production, use Alembic migrations instead of ``create_tables``.
        """
        if self._engine is not None:
            return

        if self.is_sqlite:
            self._engine = create_async_engine(
                self.url,
                echo=self._settings.debug,
                connect_args={"timeout": 30},
            )
        else:
            self._engine = create_async_engine(
                self.url,
                echo=self._settings.debug,
                pool_size=self._settings.database_pool_size,
                max_overflow=self._settings.database_max_overflow,
                pool_pre_ping=True,
            )

        self._session_maker = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        if create_tables:
            async with self._engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            logger.info("Database tables created")

    async def dispose(self) -> None:
        """Close database connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an async session that commits on success and rolls back on error."""
        if self._session_maker is None:
            raise RuntimeError("Database is not connected")
        async with self._session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
