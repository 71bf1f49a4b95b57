"""
Typed records returned by every store.

Stores never hand rows to the services directly; each row goes through a
mapping function in app.stores.mapping first.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from capsules_shared.schemas.capsules import (
    MemberDbRole,
    MembershipPolicy,
    RequestOrigin,
    RequestStatus,
)
from capsules_shared.schemas.social import FriendRequestStatus


class CapsuleRecord(BaseModel):
    id: str
    name: str
    slug: Optional[str] = None
    owner_id: str
    membership_policy: MembershipPolicy = MembershipPolicy.REQUEST_APPROVAL
    banner_url: Optional[str] = None
    store_banner_url: Optional[str] = None
    promo_tile_url: Optional[str] = None
    logo_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"frozen": True}


class MemberRecord(BaseModel):
    capsule_id: str
    user_id: str
    role: Optional[MemberDbRole] = None  # None when the stored role is unrecognized
    joined_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None


class FollowerRecord(BaseModel):
    capsule_id: str
    user_id: str
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None


class RequestRecord(BaseModel):
    id: str
    capsule_id: str
    requester_id: str
    status: RequestStatus
    origin: RequestOrigin = RequestOrigin.VIEWER_REQUEST
    initiator_id: Optional[str] = None
    role: Optional[MemberDbRole] = None
    message: Optional[str] = None
    responded_by: Optional[str] = None
    responded_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING


class EdgeKind(str, Enum):
    FRIENDSHIP = "friendship"
    FRIEND_REQUEST = "friend_request"
    FOLLOW = "follow"
    BLOCK = "block"


class GraphEdge(BaseModel):
    """A row from any of the four social graph tables.

    source_id/target_id are the ordered pair: user/friend, requester/recipient,
    follower/followee or blocker/blocked depending on kind.
    """

    kind: EdgeKind
    id: str
    source_id: str
    target_id: str
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    # friendship
    request_id: Optional[str] = None
    # friend request
    status: Optional[FriendRequestStatus] = None
    message: Optional[str] = None
    responded_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    # follow
    muted_at: Optional[datetime] = None
    # block
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None

    @property
    def is_live(self) -> bool:
        """Active, and for friend requests still pending."""
        if self.kind == EdgeKind.FRIEND_REQUEST:
            return self.is_active and self.status == FriendRequestStatus.PENDING
        return self.is_active
