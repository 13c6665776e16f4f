"""
Database utilities: async SQLAlchemy engine and session factory.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)

from .models import Base


def build_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, future=True, echo=False)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create tables if missing. Schema migrations are out of scope for the store."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class Database:
    """Owns one engine and its session factory for the lifetime of the app."""

    def __init__(self, url: str):
        self.url = url
        self._engine: Optional[AsyncEngine] = None
        self._session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = build_engine(self.url)
        return self._engine

    def session(self) -> AsyncSession:
        """Return a new AsyncSession: ``async with db.session() as session:``."""
        if self._session_maker is None:
            self._session_maker = build_session_maker(self.engine)
        return self._session_maker()

    async def start(self) -> None:
        await init_models(self.engine)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None
