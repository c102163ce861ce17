import asyncio
from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from registry.core.config import settings


class Base(DeclarativeBase):
    pass


def _create_engine(url: str) -> AsyncEngine:
    if "postgresql" in url.lower():
        return create_async_engine(
            url,
            echo=False,
            pool_pre_ping=True,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=settings.db_pool_recycle,
            pool_timeout=settings.db_pool_timeout,
        )
    return create_async_engine(url, echo=False, pool_pre_ping=True)


class Database:
    """Process-scoped storage handle.

    Created once per application, schema is ensured on startup and the engine
    is disposed on shutdown. Services receive it explicitly.
    """

    def __init__(self, url: str | None = None) -> None:
        self.url = url or settings.database_url
        self.engine = _create_engine(self.url)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            autoflush=False,
        )
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def ensure_schema_ready(self) -> None:
        """Create DB tables once, also for environments where startup hooks are skipped."""
        if self._schema_ready:
            return

        async with self._schema_lock:
            if self._schema_ready:
                return

            from registry.models import models as _models  # noqa: F401

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            self._schema_ready = True

    async def dispose(self) -> None:
        await self.engine.dispose()
        self._schema_ready = False


def get_database(request: Request) -> Database:
    return request.app.state.database


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    database = get_database(request)
    await database.ensure_schema_ready()
    async with database.session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
