"""
Async SQLAlchemy engine, session factory and declarative base.
"""

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import settings


class Base(DeclarativeBase):
    pass


def build_engine(url: str = settings.DATABASE_URL, **kwargs) -> AsyncEngine:
    """Create an async engine. Pool sizing only applies to server databases."""
    if not url.startswith("sqlite"):
        kwargs.setdefault("pool_size", settings.DB_POOL_SIZE)
        kwargs.setdefault("max_overflow", settings.DB_MAX_OVERFLOW)
        kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(url, echo=settings.DB_ECHO, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Detectors keep using ORM rows after the unit of work commits.
    return async_sessionmaker(bind, expire_on_commit=False, class_=AsyncSession)


engine = build_engine()
async_session_factory = build_session_factory(engine)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a session; uncommitted work is rolled back on close."""
    async with async_session_factory() as session:
        yield session


async def init_db(bind: AsyncEngine = engine) -> None:
    """Create all tables from the ORM metadata."""
    # Register mappers before create_all
    from app.models import tables  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose the engine connection pool."""
    await engine.dispose()
