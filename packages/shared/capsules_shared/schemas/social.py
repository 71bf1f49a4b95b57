"""
Social graph schemas: friend requests, friendships, follows, blocks and the
realtime events published when any of them change.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class FriendRequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class GraphEventType(str, Enum):
    FRIEND_REQUEST_CREATED = "friend.request.created"
    FRIEND_REQUEST_UPDATED = "friend.request.updated"
    FRIEND_REQUEST_REMOVED = "friend.request.removed"
    FRIENDSHIP_CREATED = "friendship.created"
    FRIENDSHIP_REMOVED = "friendship.removed"
    FOLLOW_UPDATED = "follow.updated"
    BLOCK_UPDATED = "block.updated"


class RequestDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class GraphEvent(BaseModel):
    """One realtime notification, addressed to a single user's channel."""

    type: GraphEventType
    user_id: str
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

class FriendRequestView(BaseModel):
    id: str
    requester_id: str
    recipient_id: str
    status: FriendRequestStatus
    message: Optional[str] = None
    created_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None


class FriendView(BaseModel):
    user_id: str
    request_id: Optional[str] = None
    since: Optional[datetime] = None


class FollowView(BaseModel):
    user_id: str
    since: Optional[datetime] = None
    muted_at: Optional[datetime] = None


class BlockView(BaseModel):
    user_id: str
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class SocialGraphSnapshot(BaseModel):
    """A user's view of their own social graph."""

    user_id: str
    friends: list[FriendView] = []
    incoming_requests: list[FriendRequestView] = []
    outgoing_requests: list[FriendRequestView] = []
    followers: list[FollowView] = []
    following: list[FollowView] = []
    blocked: list[BlockView] = []

    @property
    def friend_ids(self) -> list[str]:
        return [friend.user_id for friend in self.friends]
