"""
Store interfaces consumed by the services.

The SQL implementations live beside this module; tests substitute in-memory
fakes that honour the same contracts.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from app.stores.records import (
    CapsuleRecord,
    EdgeKind,
    FollowerRecord,
    GraphEdge,
    MemberRecord,
    RequestRecord,
)
from capsules_shared.schemas.capsules import (
    MemberDbRole,
    MembershipPolicy,
    RequestOrigin,
    RequestStatus,
)
from capsules_shared.schemas.social import FriendRequestStatus


class CapsuleStore(Protocol):
    async def get_capsule(self, capsule_id: str) -> Optional[CapsuleRecord]: ...

    async def get_capsules(self, capsule_ids: Sequence[str]) -> list[CapsuleRecord]: ...

    async def list_owned_capsules(self, owner_id: str) -> list[CapsuleRecord]: ...

    async def insert_capsule(
        self,
        *,
        name: str,
        slug: Optional[str],
        owner_id: str,
        membership_policy: MembershipPolicy,
    ) -> Optional[CapsuleRecord]:
        """Insert a capsule. Returns None when the slug is already taken."""
        ...

    async def update_membership_policy(
        self, capsule_id: str, policy: MembershipPolicy
    ) -> Optional[CapsuleRecord]: ...


class MembershipRecordStore(Protocol):
    # Members (reads return active rows only)

    async def get_member(self, capsule_id: str, user_id: str) -> Optional[MemberRecord]: ...

    async def list_members(self, capsule_id: str) -> list[MemberRecord]: ...

    async def list_memberships_for_user(self, user_id: str) -> list[MemberRecord]: ...

    async def upsert_member(
        self, capsule_id: str, user_id: str, role: MemberDbRole
    ) -> MemberRecord:
        """Insert or restore the member row, setting its role."""
        ...

    async def update_member_role(
        self, capsule_id: str, user_id: str, role: MemberDbRole
    ) -> Optional[MemberRecord]: ...

    async def delete_member(self, capsule_id: str, user_id: str) -> bool: ...

    # Followers

    async def get_follower(self, capsule_id: str, user_id: str) -> Optional[FollowerRecord]: ...

    async def list_followers(self, capsule_id: str) -> list[FollowerRecord]: ...

    async def list_followed_capsules(self, user_id: str) -> list[FollowerRecord]: ...

    async def upsert_follower(self, capsule_id: str, user_id: str) -> FollowerRecord: ...

    async def delete_follower(self, capsule_id: str, user_id: str) -> bool: ...

    # Requests and invites

    async def get_request(self, capsule_id: str, requester_id: str) -> Optional[RequestRecord]: ...

    async def get_request_by_id(self, request_id: str) -> Optional[RequestRecord]: ...

    async def list_requests(
        self,
        capsule_id: str,
        *,
        status: Optional[RequestStatus] = None,
        origin: Optional[RequestOrigin] = None,
    ) -> list[RequestRecord]: ...

    async def list_requests_for_user(
        self,
        requester_id: str,
        *,
        status: Optional[RequestStatus] = None,
        origin: Optional[RequestOrigin] = None,
    ) -> list[RequestRecord]: ...

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
        """Create the pair's request row, or reset the existing one to pending."""
        ...

    async def set_request_status(
        self,
        request_id: str,
        status: RequestStatus,
        *,
        responded_by: Optional[str],
    ) -> Optional[RequestRecord]:
        """Move a pending request to status. Returns None if it was no longer pending."""
        ...


class SocialGraphStore(Protocol):
    async def get_edge(self, kind: EdgeKind, edge_id: str) -> Optional[GraphEdge]: ...

    async def find_latest_edge(
        self, kind: EdgeKind, source_id: str, target_id: str
    ) -> Optional[GraphEdge]:
        """Most recent row for the ordered pair, tombstoned or not."""
        ...

    async def insert_edge(
        self, kind: EdgeKind, source_id: str, target_id: str, values: dict[str, Any]
    ) -> GraphEdge:
        """Insert a row, coalescing into a concurrent winner's row on conflict."""
        ...

    async def restore_edge(
        self, kind: EdgeKind, edge_id: str, values: dict[str, Any]
    ) -> Optional[GraphEdge]:
        """Clear deleted_at and apply values."""
        ...

    async def soft_delete_edge(self, kind: EdgeKind, source_id: str, target_id: str) -> int:
        """Tombstone the active row for the ordered pair. Returns rows affected."""
        ...

    async def update_pending_request(
        self, request_id: str, status: FriendRequestStatus, at: datetime
    ) -> Optional[GraphEdge]:
        """Compare-and-set a pending friend request. None if no longer pending."""
        ...

    async def close_pending_requests(
        self, requester_id: str, recipient_id: str, status: FriendRequestStatus, at: datetime
    ) -> list[GraphEdge]: ...

    async def has_active_block_between(self, user_a: str, user_b: str) -> bool: ...

    async def list_active_edges(
        self,
        kind: EdgeKind,
        *,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> list[GraphEdge]:
        """Active rows, filtered by either side. Friend requests: pending only."""
        ...
