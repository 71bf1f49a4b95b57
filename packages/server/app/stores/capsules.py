"""SQL-backed CapsuleStore."""

from __future__ import annotations

from typing import Optional, Sequence

import structlog
from sqlalchemy import update
from sqlmodel import select

from app.models.base import new_id
from app.models.capsule import Capsule
from app.stores.mapping import map_capsule_row, map_rows
from app.stores.records import CapsuleRecord
from app.stores.sql import SqlStore, insert_for, utcnow
from capsules_shared.schemas.capsules import MembershipPolicy

log = structlog.get_logger()


class SqlCapsuleStore(SqlStore):
    async def get_capsule(self, capsule_id: str) -> Optional[CapsuleRecord]:
        row = await self._first(select(Capsule).where(Capsule.id == capsule_id))
        return map_capsule_row(row)

    async def get_capsules(self, capsule_ids: Sequence[str]) -> list[CapsuleRecord]:
        if not capsule_ids:
            return []
        rows = await self._all(
            select(Capsule).where(Capsule.id.in_(list(capsule_ids))).order_by(Capsule.created_at)
        )
        return map_rows(rows, map_capsule_row)

    async def list_owned_capsules(self, owner_id: str) -> list[CapsuleRecord]:
        rows = await self._all(
            select(Capsule).where(Capsule.owner_id == owner_id).order_by(Capsule.created_at)
        )
        return map_rows(rows, map_capsule_row)

    async def insert_capsule(
        self,
        *,
        name: str,
        slug: Optional[str],
        owner_id: str,
        membership_policy: MembershipPolicy,
    ) -> Optional[CapsuleRecord]:
        capsule_id = new_id()
        now = utcnow()
        stmt = (
            insert_for(self.session, Capsule)
            .values(
                id=capsule_id,
                name=name,
                slug=slug,
                owner_id=owner_id,
                membership_policy=membership_policy.value,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["slug"])
        )
        await self._write(stmt)
        created = await self.get_capsule(capsule_id)
        if created is None:
            log.debug("capsule.slug_taken", slug=slug)
        return created

    async def update_membership_policy(
        self, capsule_id: str, policy: MembershipPolicy
    ) -> Optional[CapsuleRecord]:
        await self._write(
            update(Capsule)
            .where(Capsule.id == capsule_id)
            .values(membership_policy=policy.value, updated_at=utcnow())
        )
        return await self.get_capsule(capsule_id)
