"""Social graph edges. Each table holds at most one row per ordered user pair."""

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field

from .base import SoftDeleteMixin, StrIdMixin, _utcnow


def _created_at() -> datetime:
    return Field(
        default_factory=_utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now()},
        sa_type=sa.DateTime(timezone=True),
    )


class Friendship(StrIdMixin, SoftDeleteMixin, table=True):
    """Directed edge; a friendship is two rows, one per direction."""

    __tablename__ = "friendships"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "friend_user_id", name="uq_friendships_pair"),
    )

    user_id: str = Field(nullable=False, index=True, max_length=64)
    friend_user_id: str = Field(nullable=False, index=True, max_length=64)
    request_id: Optional[str] = Field(default=None, max_length=64)
    created_at: datetime = _created_at()


class FriendRequest(StrIdMixin, SoftDeleteMixin, table=True):
    __tablename__ = "friend_requests"
    __table_args__ = (
        sa.UniqueConstraint("requester_id", "recipient_id", name="uq_friend_requests_pair"),
    )

    requester_id: str = Field(nullable=False, index=True, max_length=64)
    recipient_id: str = Field(nullable=False, index=True, max_length=64)
    status: str = Field(default="pending", nullable=False, max_length=16)  # pending | accepted | declined | cancelled
    message: Optional[str] = None
    created_at: datetime = _created_at()
    responded_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    accepted_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))


class UserFollow(StrIdMixin, SoftDeleteMixin, table=True):
    __tablename__ = "user_follows"
    __table_args__ = (
        sa.UniqueConstraint("follower_user_id", "followee_user_id", name="uq_user_follows_pair"),
    )

    follower_user_id: str = Field(nullable=False, index=True, max_length=64)
    followee_user_id: str = Field(nullable=False, index=True, max_length=64)
    muted_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    created_at: datetime = _created_at()


class UserBlock(StrIdMixin, SoftDeleteMixin, table=True):
    __tablename__ = "user_blocks"
    __table_args__ = (
        sa.UniqueConstraint("blocker_user_id", "blocked_user_id", name="uq_user_blocks_pair"),
    )

    blocker_user_id: str = Field(nullable=False, index=True, max_length=64)
    blocked_user_id: str = Field(nullable=False, index=True, max_length=64)
    reason: Optional[str] = None
    expires_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    created_at: datetime = _created_at()
