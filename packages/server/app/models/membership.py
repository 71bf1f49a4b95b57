"""Capsule members, followers and membership requests/invites."""

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field

from .base import SoftDeleteMixin, StrIdMixin, TimestampMixin, _utcnow


class CapsuleMember(SoftDeleteMixin, table=True):
    __tablename__ = "capsule_members"

    capsule_id: str = Field(foreign_key="capsules.id", primary_key=True, max_length=64)
    user_id: str = Field(primary_key=True, index=True, max_length=64)
    role: str = Field(nullable=False, default="member", max_length=32)  # owner | admin | moderator | member | guest
    joined_at: datetime = Field(
        default_factory=_utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now()},
        sa_type=sa.DateTime(timezone=True),
    )


class CapsuleFollower(SoftDeleteMixin, table=True):
    __tablename__ = "capsule_followers"

    capsule_id: str = Field(foreign_key="capsules.id", primary_key=True, max_length=64)
    user_id: str = Field(primary_key=True, index=True, max_length=64)
    created_at: datetime = Field(
        default_factory=_utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now()},
        sa_type=sa.DateTime(timezone=True),
    )


class CapsuleMemberRequest(StrIdMixin, TimestampMixin, table=True):
    """One row per (capsule, requester); refreshed back to pending on re-request."""

    __tablename__ = "capsule_member_requests"
    __table_args__ = (
        sa.UniqueConstraint("capsule_id", "requester_id", name="uq_capsule_member_requests_pair"),
    )

    capsule_id: str = Field(foreign_key="capsules.id", nullable=False, index=True, max_length=64)
    requester_id: str = Field(nullable=False, index=True, max_length=64)
    status: str = Field(default="pending", nullable=False, max_length=16)
    origin: str = Field(default="viewer_request", nullable=False, max_length=16)
    initiator_id: Optional[str] = Field(default=None, max_length=64)
    role: str = Field(default="member", nullable=False, max_length=32)
    message: Optional[str] = None
    responded_by: Optional[str] = Field(default=None, max_length=64)
    responded_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    approved_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    declined_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
