"""
Database engine and session management.

The engine is built lazily so tests and scripts can point the stores at a
different database (e.g. in-memory SQLite) without touching settings.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from app.core.config import get_settings

_engine: AsyncEngine | None = None
_session_factory: sessionmaker | None = None


def build_engine(url: str, *, echo: bool = False, **kwargs) -> AsyncEngine:
    return create_async_engine(url, echo=echo, future=True, **kwargs)


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database_url, echo=settings.debug)
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


async def create_tables(engine: AsyncEngine | None = None) -> None:
    """Create all tables (development and tests only, use migrations in production)."""
    import app.models  # noqa: F401

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


@asynccontextmanager
async def get_session_context(factory: sessionmaker | None = None) -> AsyncIterator[AsyncSession]:
    """Yield a session, rolling back on error.

    Stores commit their own writes; the final commit only flushes anything
    a caller added directly to the session.
    """
    async with (factory or get_session_factory())() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
