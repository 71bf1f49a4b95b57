"""
Capsule membership schemas shared between the engine and its callers.

Covers: membership policy and role enums, request/invite lifecycle states,
and the aggregate membership view returned by every membership operation.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class MembershipPolicy(str, Enum):
    OPEN = "open"
    INVITE_ONLY = "invite_only"
    REQUEST_APPROVAL = "request_approval"


class MemberRole(str, Enum):
    """Externally visible member roles."""

    FOUNDER = "founder"
    ADMIN = "admin"
    LEADER = "leader"
    MEMBER = "member"


class MemberDbRole(str, Enum):
    """Roles as persisted on capsule_members rows."""

    OWNER = "owner"
    ADMIN = "admin"
    MODERATOR = "moderator"
    MEMBER = "member"
    GUEST = "guest"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class RequestOrigin(str, Enum):
    VIEWER_REQUEST = "viewer_request"
    OWNER_INVITE = "owner_invite"


class Capability(str, Enum):
    INVITE_MEMBERS = "can_invite_members"
    APPROVE_REQUESTS = "can_approve_requests"
    CHANGE_ROLES = "can_change_roles"
    REMOVE_MEMBERS = "can_remove_members"
    CUSTOMIZE = "can_customize"
    MANAGE_LADDERS = "can_manage_ladders"
    MODERATE_CONTENT = "can_moderate_content"


class CapsuleOwnership(str, Enum):
    OWNER = "owner"
    MEMBER = "member"
    FOLLOWER = "follower"


# Valid state transitions for membership requests and invites
REQUEST_TRANSITIONS: dict[RequestStatus, list[RequestStatus]] = {
    RequestStatus.PENDING: [
        RequestStatus.APPROVED,
        RequestStatus.DECLINED,
        RequestStatus.CANCELLED,
    ],
    RequestStatus.APPROVED: [],
    RequestStatus.DECLINED: [],
    RequestStatus.CANCELLED: [],
}


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

class CapsuleInfo(BaseModel):
    id: str
    name: str
    slug: Optional[str] = None
    owner_id: str
    membership_policy: MembershipPolicy = MembershipPolicy.REQUEST_APPROVAL
    banner_url: Optional[str] = None
    store_banner_url: Optional[str] = None
    promo_tile_url: Optional[str] = None
    logo_url: Optional[str] = None

    model_config = {"from_attributes": True}


class CapsulePermissions(BaseModel):
    can_invite_members: bool = False
    can_approve_requests: bool = False
    can_change_roles: bool = False
    can_remove_members: bool = False
    can_customize: bool = False
    can_manage_ladders: bool = False
    can_moderate_content: bool = False


class ViewerState(BaseModel):
    """Membership summary computed for one viewer against one capsule."""

    user_id: Optional[str] = None
    is_owner: bool = False
    is_member: bool = False
    is_follower: bool = False
    can_manage: bool = False
    can_request: bool = False
    can_follow: bool = False
    role: Optional[MemberRole] = None
    member_since: Optional[datetime] = None
    followed_at: Optional[datetime] = None
    request_status: Optional[RequestStatus] = None
    request_id: Optional[str] = None
    permissions: CapsulePermissions = Field(default_factory=CapsulePermissions)


class MembershipCounts(BaseModel):
    members: int = 0
    pending_requests: int = 0
    followers: int = 0


class CapsuleMemberView(BaseModel):
    user_id: str
    role: MemberRole
    joined_at: Optional[datetime] = None
    is_owner: bool = False


class CapsuleFollowerView(BaseModel):
    user_id: str
    followed_at: Optional[datetime] = None


class MemberRequestView(BaseModel):
    id: str
    capsule_id: str
    requester_id: str
    status: RequestStatus
    origin: RequestOrigin
    role: MemberRole = MemberRole.MEMBER
    initiator_id: Optional[str] = None
    message: Optional[str] = None
    created_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    responded_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class MembershipState(BaseModel):
    """Aggregate returned by every membership operation."""

    capsule: CapsuleInfo
    viewer: ViewerState
    counts: MembershipCounts
    members: list[CapsuleMemberView] = []
    followers: list[CapsuleFollowerView] = []
    requests: list[MemberRequestView] = []
    invites: list[MemberRequestView] = []
    viewer_request: Optional[MemberRequestView] = None


class CapsuleListItem(BaseModel):
    id: str
    name: str
    slug: Optional[str] = None
    owner_id: str
    ownership: CapsuleOwnership
    role: Optional[MemberRole] = None  # the viewer's role in this capsule
    membership_policy: MembershipPolicy = MembershipPolicy.REQUEST_APPROVAL
    banner_url: Optional[str] = None
    logo_url: Optional[str] = None


class ViewerInvite(BaseModel):
    """A pending invite addressed to the viewer."""

    request: MemberRequestView
    capsule: CapsuleInfo
