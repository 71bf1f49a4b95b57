"""SQL-backed MembershipRecordStore: members, followers, requests and invites."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import update
from sqlmodel import select

from app.models.base import new_id
from app.models.membership import CapsuleFollower, CapsuleMember, CapsuleMemberRequest
from app.stores.mapping import map_follower_row, map_member_row, map_request_row, map_rows
from app.stores.records import FollowerRecord, MemberRecord, RequestRecord
from app.stores.sql import SqlStore, insert_for, utcnow
from capsules_shared.schemas.capsules import (
    MemberDbRole,
    RequestOrigin,
    RequestStatus,
)

# Terminal status → timestamp column stamped on the transition
_TERMINAL_COLUMNS: dict[RequestStatus, str] = {
    RequestStatus.APPROVED: "approved_at",
    RequestStatus.DECLINED: "declined_at",
    RequestStatus.CANCELLED: "cancelled_at",
}


class SqlMembershipRecordStore(SqlStore):
    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def get_member(self, capsule_id: str, user_id: str) -> Optional[MemberRecord]:
        row = await self._first(
            select(CapsuleMember).where(
                CapsuleMember.capsule_id == capsule_id,
                CapsuleMember.user_id == user_id,
                CapsuleMember.deleted_at.is_(None),
            )
        )
        return map_member_row(row)

    async def list_members(self, capsule_id: str) -> list[MemberRecord]:
        rows = await self._all(
            select(CapsuleMember)
            .where(CapsuleMember.capsule_id == capsule_id, CapsuleMember.deleted_at.is_(None))
            .order_by(CapsuleMember.joined_at)
        )
        return map_rows(rows, map_member_row)

    async def list_memberships_for_user(self, user_id: str) -> list[MemberRecord]:
        rows = await self._all(
            select(CapsuleMember)
            .where(CapsuleMember.user_id == user_id, CapsuleMember.deleted_at.is_(None))
            .order_by(CapsuleMember.joined_at)
        )
        return map_rows(rows, map_member_row)

    async def upsert_member(
        self, capsule_id: str, user_id: str, role: MemberDbRole
    ) -> MemberRecord:
        stmt = insert_for(self.session, CapsuleMember).values(
            capsule_id=capsule_id,
            user_id=user_id,
            role=role.value,
            joined_at=utcnow(),
            deleted_at=None,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["capsule_id", "user_id"],
            set_={"role": stmt.excluded.role, "deleted_at": None},
        )
        await self._write(stmt)
        member = await self.get_member(capsule_id, user_id)
        assert member is not None
        return member

    async def update_member_role(
        self, capsule_id: str, user_id: str, role: MemberDbRole
    ) -> Optional[MemberRecord]:
        updated = await self._write(
            update(CapsuleMember)
            .where(
                CapsuleMember.capsule_id == capsule_id,
                CapsuleMember.user_id == user_id,
                CapsuleMember.deleted_at.is_(None),
            )
            .values(role=role.value)
        )
        if not updated:
            return None
        return await self.get_member(capsule_id, user_id)

    async def delete_member(self, capsule_id: str, user_id: str) -> bool:
        removed = await self._write(
            update(CapsuleMember)
            .where(
                CapsuleMember.capsule_id == capsule_id,
                CapsuleMember.user_id == user_id,
                CapsuleMember.deleted_at.is_(None),
            )
            .values(deleted_at=utcnow())
        )
        return removed > 0

    # ------------------------------------------------------------------
    # Followers
    # ------------------------------------------------------------------

    async def get_follower(self, capsule_id: str, user_id: str) -> Optional[FollowerRecord]:
        row = await self._first(
            select(CapsuleFollower).where(
                CapsuleFollower.capsule_id == capsule_id,
                CapsuleFollower.user_id == user_id,
                CapsuleFollower.deleted_at.is_(None),
            )
        )
        return map_follower_row(row)

    async def list_followers(self, capsule_id: str) -> list[FollowerRecord]:
        rows = await self._all(
            select(CapsuleFollower)
            .where(CapsuleFollower.capsule_id == capsule_id, CapsuleFollower.deleted_at.is_(None))
            .order_by(CapsuleFollower.created_at)
        )
        return map_rows(rows, map_follower_row)

    async def list_followed_capsules(self, user_id: str) -> list[FollowerRecord]:
        rows = await self._all(
            select(CapsuleFollower)
            .where(CapsuleFollower.user_id == user_id, CapsuleFollower.deleted_at.is_(None))
            .order_by(CapsuleFollower.created_at)
        )
        return map_rows(rows, map_follower_row)

    async def upsert_follower(self, capsule_id: str, user_id: str) -> FollowerRecord:
        # Restoring keeps the original created_at
        stmt = insert_for(self.session, CapsuleFollower).values(
            capsule_id=capsule_id,
            user_id=user_id,
            created_at=utcnow(),
            deleted_at=None,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["capsule_id", "user_id"],
            set_={"deleted_at": None},
        )
        await self._write(stmt)
        follower = await self.get_follower(capsule_id, user_id)
        assert follower is not None
        return follower

    async def delete_follower(self, capsule_id: str, user_id: str) -> bool:
        removed = await self._write(
            update(CapsuleFollower)
            .where(
                CapsuleFollower.capsule_id == capsule_id,
                CapsuleFollower.user_id == user_id,
                CapsuleFollower.deleted_at.is_(None),
            )
            .values(deleted_at=utcnow())
        )
        return removed > 0

    # ------------------------------------------------------------------
    # Requests and invites
    # ------------------------------------------------------------------

    async def get_request(self, capsule_id: str, requester_id: str) -> Optional[RequestRecord]:
        row = await self._first(
            select(CapsuleMemberRequest).where(
                CapsuleMemberRequest.capsule_id == capsule_id,
                CapsuleMemberRequest.requester_id == requester_id,
            )
        )
        return map_request_row(row)

    async def get_request_by_id(self, request_id: str) -> Optional[RequestRecord]:
        row = await self._first(
            select(CapsuleMemberRequest).where(CapsuleMemberRequest.id == request_id)
        )
        return map_request_row(row)

    async def list_requests(
        self,
        capsule_id: str,
        *,
        status: Optional[RequestStatus] = None,
        origin: Optional[RequestOrigin] = None,
    ) -> list[RequestRecord]:
        stmt = select(CapsuleMemberRequest).where(CapsuleMemberRequest.capsule_id == capsule_id)
        if status is not None:
            stmt = stmt.where(CapsuleMemberRequest.status == status.value)
        if origin is not None:
            stmt = stmt.where(CapsuleMemberRequest.origin == origin.value)
        rows = await self._all(stmt.order_by(CapsuleMemberRequest.created_at))
        return map_rows(rows, map_request_row)

    async def list_requests_for_user(
        self,
        requester_id: str,
        *,
        status: Optional[RequestStatus] = None,
        origin: Optional[RequestOrigin] = None,
    ) -> list[RequestRecord]:
        stmt = select(CapsuleMemberRequest).where(
            CapsuleMemberRequest.requester_id == requester_id
        )
        if status is not None:
            stmt = stmt.where(CapsuleMemberRequest.status == status.value)
        if origin is not None:
            stmt = stmt.where(CapsuleMemberRequest.origin == origin.value)
        rows = await self._all(stmt.order_by(CapsuleMemberRequest.created_at.desc()))
        return map_rows(rows, map_request_row)

    async def upsert_request(
        self,
        *,
        capsule_id: str,
        requester_id: str,
        origin: RequestOrigin,
        initiator_id: str,
        role: MemberDbRole,
        message: Optional[str],
    ) -> RequestRecord:
        now = utcnow()
        stmt = insert_for(self.session, CapsuleMemberRequest).values(
            id=new_id(),
            capsule_id=capsule_id,
            requester_id=requester_id,
            status=RequestStatus.PENDING.value,
            origin=origin.value,
            initiator_id=initiator_id,
            role=role.value,
            message=message,
            created_at=now,
            updated_at=now,
        )
        # A re-request refreshes the pair's row: back to pending, terminal stamps cleared
        stmt = stmt.on_conflict_do_update(
            index_elements=["capsule_id", "requester_id"],
            set_={
                "status": RequestStatus.PENDING.value,
                "origin": stmt.excluded.origin,
                "initiator_id": stmt.excluded.initiator_id,
                "role": stmt.excluded.role,
                "message": stmt.excluded.message,
                "responded_by": None,
                "responded_at": None,
                "approved_at": None,
                "declined_at": None,
                "cancelled_at": None,
                "updated_at": now,
            },
        )
        await self._write(stmt)
        request = await self.get_request(capsule_id, requester_id)
        assert request is not None
        return request

    async def set_request_status(
        self,
        request_id: str,
        status: RequestStatus,
        *,
        responded_by: Optional[str],
    ) -> Optional[RequestRecord]:
        now = utcnow()
        values = {
            "status": status.value,
            "responded_by": responded_by,
            "responded_at": now,
            "updated_at": now,
        }
        terminal_column = _TERMINAL_COLUMNS.get(status)
        if terminal_column:
            values[terminal_column] = now

        updated = await self._write(
            update(CapsuleMemberRequest)
            .where(
                CapsuleMemberRequest.id == request_id,
                CapsuleMemberRequest.status == RequestStatus.PENDING.value,
            )
            .values(**values)
        )
        if not updated:
            return None
        return await self.get_request_by_id(request_id)
