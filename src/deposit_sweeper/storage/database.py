"""Engine and session factory for the deposit store.

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for tests and local
runs. The schema is owned by Alembic; ``init_schema_async`` only exists for
bootstrapping empty databases.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from deposit_sweeper.storage.models import Base

logger = logging.getLogger(__name__)


def normalize_async_database_url(database_url: str) -> str:
    """Map a sync PostgreSQL URL onto the asyncpg driver."""
    if database_url.startswith("postgresql://"):
        logger.warning("DATABASE_URL uses 'postgresql://'; switching to the asyncpg driver")
        return "postgresql+asyncpg://" + database_url.removeprefix("postgresql://")
    return database_url


class DatabaseManager:
    """Lazily creates the async engine and hands out its session factory.

    Sessions are created with ``expire_on_commit=False`` so DTOs built from
    ORM rows stay readable after the unit of work has committed.
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        """Initialize the manager.

        Args:
            database_url: ``postgresql+asyncpg://`` or ``sqlite+aiosqlite://`` URL.
            pool_size: Connection pool size (PostgreSQL only).
            max_overflow: Connections allowed above ``pool_size`` (PostgreSQL only).
            echo: Log every SQL statement.
        """
        self.database_url = normalize_async_database_url(database_url)
        self._engine_options: dict[str, Any] = {"echo": echo}
        if not self.database_url.startswith("sqlite"):
            self._engine_options.update(pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True)

        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.database_url, **self._engine_options)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Session factory bound to the managed engine."""
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._session_factory

    async def init_schema_async(self) -> None:
        """Create any missing tables from the ORM metadata."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Deposit sweeper schema created")

    async def dispose_async(self) -> None:
        """Close pooled connections; the engine is rebuilt on next use."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("Database connections closed")
