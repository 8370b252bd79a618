from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from cuddly_auth.db.base import Base


class Database:
    """Owns the engine and session factory for one process.

    Built by the entry point (application lifespan or CLI) and disposed there.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, future=True, echo=echo, connect_args=connect_args)
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)

    async def create_all(self) -> None:
        # Importing the models registers their tables on Base.metadata.
        from cuddly_auth import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.sessionmaker() as session:
            yield session


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """FastAPI dependency to provide a database session."""
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session
