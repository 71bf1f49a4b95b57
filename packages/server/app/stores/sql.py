"""Helpers shared by the SQL store implementations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def insert_for(session: AsyncSession, model: type[SQLModel]):
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model.__table__)
    if dialect == "sqlite":
        return sqlite.insert(model.__table__)
    raise RuntimeError(f"Upserts are not supported on the {dialect!r} dialect")


class SqlStore:
    """Base for stores bound to one AsyncSession.

    Every write commits before returning so callers can fire side effects
    knowing the change is durable.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _first(self, stmt) -> Optional[Any]:
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def _all(self, stmt) -> list[Any]:
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def _write(self, stmt) -> int:
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount or 0
