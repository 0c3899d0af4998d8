"""Database session management for async SQLAlchemy."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


class DatabaseManager:
    """Owns the engine and hands out sessions.

    Every ledger mutation runs inside ``session()``: it commits when the block
    exits normally and rolls back on any exception, so a grant, its
    transaction row and the cache mirror land together or not at all.

    Webhook bursts and generation workers share one pool:
    - pool_size=10: persistent connections
    - max_overflow=20: burst headroom (up to 30 total)
    - pool_pre_ping=True: drop connections the server closed
    """

    def __init__(
        self,
        database_url: str,
        *,
        echo: bool = False,
        pool_size: int = 10,
        max_overflow: int = 20,
    ):
        self._database_url = database_url
        self._echo = echo
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._logger = logging.getLogger(__name__)

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> DatabaseManager:
        """Wrap an existing engine (tests, migrations)."""
        manager = cls(engine.url.render_as_string(hide_password=False))
        manager._engine = engine
        manager._session_factory = async_sessionmaker(
            engine, expire_on_commit=False, class_=AsyncSession
        )
        return manager

    async def connect(self) -> None:
        """Create the engine and session factory, then check the server answers."""
        if self._engine is not None:
            return

        self._engine = create_async_engine(
            self._database_url,
            echo=self._echo,
            pool_pre_ping=True,
            pool_size=self._pool_size,
            max_overflow=self._max_overflow,
        )
        self._session_factory = async_sessionmaker(
            self._engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

        self._logger.info("Connected to PostgreSQL database")

    async def disconnect(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._logger.info("Disconnected from PostgreSQL database")

    async def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            await self.connect()
        if self._session_factory is None:
            raise RuntimeError("Failed to initialize database session factory")
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Get a transactional session.

        Usage:
            async with db.session() as session:
                await CreditService(session).consume(user_id, 100, "story")
        """
        factory = await self._factory()
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        """Get a session for plain reads (balance, stats). Nothing is committed."""
        factory = await self._factory()
        async with factory() as session:
            session.autoflush = False
            yield session

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._engine


# Singleton instance
_db_manager: DatabaseManager | None = None


def init_db_manager(database_url: str, *, echo: bool = False) -> DatabaseManager:
    """Initialize the global database manager."""
    global _db_manager
    _db_manager = DatabaseManager(database_url, echo=echo)
    return _db_manager


def get_db_manager() -> DatabaseManager:
    """Get the global database manager instance."""
    if _db_manager is None:
        raise RuntimeError(
            "Database manager not initialized. Call init_db_manager() first."
        )
    return _db_manager
