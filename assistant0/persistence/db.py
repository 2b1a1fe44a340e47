from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from assistant0.core.config import get_settings
from assistant0.domain.models import Base


@dataclass
class Database:
    # Process-scoped handle: created once at startup, passed explicitly, disposed at shutdown.
    engine: AsyncEngine
    sessionmaker: async_sessionmaker[AsyncSession]

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.sessionmaker() as session:
            yield session

    async def create_all(self) -> None:
        # Schema bootstrap for local development and tests; production uses Alembic.
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


def create_database(database_url: str | None = None, **engine_kwargs: Any) -> Database:
    settings = get_settings()
    url = database_url or settings.database_url
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools for predictable latency under load.
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        kwargs["pool_timeout"] = 30
        kwargs["pool_recycle"] = 1800
    kwargs.update(engine_kwargs)
    engine = create_async_engine(url, **kwargs)
    return Database(engine=engine, sessionmaker=async_sessionmaker(engine, expire_on_commit=False))
