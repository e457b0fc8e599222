from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from fastapi import Depends, Request
from redis import asyncio as aioredis
from typing import AsyncGenerator, Optional
import logging

from app.core.config import Settings

logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """Explicitly constructed storage handle.

    Owns the async engine and the session factory. Built once at process
    start, passed to whoever needs storage, and disposed on shutdown.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False
        )

    @classmethod
    def from_url(cls, url: str, echo: bool = False, **engine_kwargs) -> "Database":
        """Create a handle for the given database URL"""
        if url.startswith("sqlite"):
            engine_kwargs.setdefault("poolclass", NullPool)
        else:
            engine_kwargs.setdefault("pool_pre_ping", True)
        return cls(create_async_engine(url, echo=echo, future=True, **engine_kwargs))

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """Create a handle from application settings"""
        kwargs = {}
        if not settings.DATABASE_URL.startswith("sqlite"):
            kwargs.update(
                pool_size=settings.DATABASE_POOL_SIZE,
                max_overflow=settings.DATABASE_MAX_OVERFLOW
            )
        return cls.from_url(settings.DATABASE_URL, echo=settings.DATABASE_ECHO, **kwargs)

    def session(self) -> AsyncSession:
        """Open a new session"""
        return self.session_factory()

    async def create_all(self) -> None:
        """Create all tables (for development - use Alembic in production)"""
        # Model modules register their tables on Base.metadata when imported
        import app.modules.users.models  # noqa: F401
        import app.modules.accounts.models  # noqa: F401
        import app.modules.ledger.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        """Drop all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        """Close every pooled connection"""
        await self.engine.dispose()
        logger.info("Database engine disposed")


async def open_redis(url: str) -> aioredis.Redis:
    """Create Redis connection"""
    return aioredis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=10
    )


def get_database(request: Request) -> Database:
    """Storage handle attached to the running application"""
    database: Optional[Database] = getattr(request.app.state, "database", None)
    if database is None:
        raise RuntimeError("Database has not been initialised")
    return database


def get_redis(request: Request) -> aioredis.Redis:
    """Redis client attached to the running application"""
    redis = getattr(request.app.state, "redis", None)
    if redis is None:
        raise RuntimeError("Redis has not been initialised")
    return redis


async def get_db(database: Database = Depends(get_database)) -> AsyncGenerator[AsyncSession, None]:
    """Get async database session"""
    async with database.session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
