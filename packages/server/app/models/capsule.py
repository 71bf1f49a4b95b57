"""Capsule (group workspace) model."""

from typing import Optional

from sqlmodel import Field

from .base import StrIdMixin, TimestampMixin


class Capsule(StrIdMixin, TimestampMixin, table=True):
    __tablename__ = "capsules"

    name: str = Field(nullable=False, max_length=80)
    slug: Optional[str] = Field(default=None, unique=True, index=True, max_length=64)
    owner_id: str = Field(nullable=False, index=True, max_length=64)  # immutable after creation
    membership_policy: str = Field(
        default="request_approval",
        nullable=False,
        max_length=32,
    )  # open | invite_only | request_approval
    banner_url: Optional[str] = None
    store_banner_url: Optional[str] = None
    promo_tile_url: Optional[str] = None
    logo_url: Optional[str] = None
