"""
Row → record mapping.

Rows arrive either as SQLModel instances or as plain mappings (raw result
rows, fixtures). Every mapper normalizes blank strings to None, attaches UTC
to naive timestamps, and returns None for rows missing a required identifier.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, TypeVar

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

E = TypeVar("E", bound=Enum)

UNTITLED_CAPSULE_NAME = "Untitled Capsule"

# (source column, target column) per edge table
EDGE_COLUMNS: dict[EdgeKind, tuple[str, str]] = {
    EdgeKind.FRIENDSHIP: ("user_id", "friend_user_id"),
    EdgeKind.FRIEND_REQUEST: ("requester_id", "recipient_id"),
    EdgeKind.FOLLOW: ("follower_user_id", "followee_user_id"),
    EdgeKind.BLOCK: ("blocker_user_id", "blocked_user_id"),
}


def _field(row: Any, name: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


def normalize_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def as_utc(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_enum(enum_cls: type[E], value: Any) -> Optional[E]:
    if isinstance(value, Enum):
        value = value.value
    text = normalize_string(value)
    if text is None:
        return None
    try:
        return enum_cls(text.lower())
    except ValueError:
        return None


def map_rows(rows: Iterable[Any], mapper) -> list:
    """Map every row, dropping the ones that fail to map."""
    mapped = (mapper(row) for row in rows)
    return [record for record in mapped if record is not None]


# ---------------------------------------------------------------------------
# Capsules
# ---------------------------------------------------------------------------

def map_capsule_row(row: Any) -> Optional[CapsuleRecord]:
    if row is None:
        return None
    capsule_id = normalize_string(_field(row, "id"))
    owner_id = normalize_string(_field(row, "owner_id"))
    if not capsule_id or not owner_id:
        return None
    return CapsuleRecord(
        id=capsule_id,
        name=normalize_string(_field(row, "name")) or UNTITLED_CAPSULE_NAME,
        slug=normalize_string(_field(row, "slug")),
        owner_id=owner_id,
        membership_policy=parse_enum(MembershipPolicy, _field(row, "membership_policy"))
        or MembershipPolicy.REQUEST_APPROVAL,
        banner_url=normalize_string(_field(row, "banner_url")),
        store_banner_url=normalize_string(_field(row, "store_banner_url")),
        promo_tile_url=normalize_string(_field(row, "promo_tile_url")),
        logo_url=normalize_string(_field(row, "logo_url")),
        created_at=as_utc(_field(row, "created_at")),
        updated_at=as_utc(_field(row, "updated_at")),
    )


def map_member_row(row: Any) -> Optional[MemberRecord]:
    if row is None:
        return None
    capsule_id = normalize_string(_field(row, "capsule_id"))
    user_id = normalize_string(_field(row, "user_id"))
    if not capsule_id or not user_id:
        return None
    return MemberRecord(
        capsule_id=capsule_id,
        user_id=user_id,
        role=parse_enum(MemberDbRole, _field(row, "role")),
        joined_at=as_utc(_field(row, "joined_at")),
        deleted_at=as_utc(_field(row, "deleted_at")),
    )


def map_follower_row(row: Any) -> Optional[FollowerRecord]:
    if row is None:
        return None
    capsule_id = normalize_string(_field(row, "capsule_id"))
    user_id = normalize_string(_field(row, "user_id"))
    if not capsule_id or not user_id:
        return None
    return FollowerRecord(
        capsule_id=capsule_id,
        user_id=user_id,
        created_at=as_utc(_field(row, "created_at")),
        deleted_at=as_utc(_field(row, "deleted_at")),
    )


def map_request_row(row: Any) -> Optional[RequestRecord]:
    if row is None:
        return None
    request_id = normalize_string(_field(row, "id"))
    capsule_id = normalize_string(_field(row, "capsule_id"))
    requester_id = normalize_string(_field(row, "requester_id"))
    status = parse_enum(RequestStatus, _field(row, "status"))
    if not request_id or not capsule_id or not requester_id or status is None:
        return None
    return RequestRecord(
        id=request_id,
        capsule_id=capsule_id,
        requester_id=requester_id,
        status=status,
        origin=parse_enum(RequestOrigin, _field(row, "origin")) or RequestOrigin.VIEWER_REQUEST,
        initiator_id=normalize_string(_field(row, "initiator_id")),
        role=parse_enum(MemberDbRole, _field(row, "role")),
        message=normalize_string(_field(row, "message")),
        responded_by=normalize_string(_field(row, "responded_by")),
        responded_at=as_utc(_field(row, "responded_at")),
        approved_at=as_utc(_field(row, "approved_at")),
        declined_at=as_utc(_field(row, "declined_at")),
        cancelled_at=as_utc(_field(row, "cancelled_at")),
        created_at=as_utc(_field(row, "created_at")),
        updated_at=as_utc(_field(row, "updated_at")),
    )


# ---------------------------------------------------------------------------
# Social graph
# ---------------------------------------------------------------------------

def map_edge_row(kind: EdgeKind, row: Any) -> Optional[GraphEdge]:
    if row is None:
        return None
    source_col, target_col = EDGE_COLUMNS[kind]
    edge_id = normalize_string(_field(row, "id"))
    source_id = normalize_string(_field(row, source_col))
    target_id = normalize_string(_field(row, target_col))
    if not edge_id or not source_id or not target_id:
        return None

    status = None
    if kind == EdgeKind.FRIEND_REQUEST:
        status = parse_enum(FriendRequestStatus, _field(row, "status"))
        if status is None:
            return None

    return GraphEdge(
        kind=kind,
        id=edge_id,
        source_id=source_id,
        target_id=target_id,
        created_at=as_utc(_field(row, "created_at")),
        deleted_at=as_utc(_field(row, "deleted_at")),
        request_id=normalize_string(_field(row, "request_id")),
        status=status,
        message=normalize_string(_field(row, "message")),
        responded_at=as_utc(_field(row, "responded_at")),
        accepted_at=as_utc(_field(row, "accepted_at")),
        muted_at=as_utc(_field(row, "muted_at")),
        reason=normalize_string(_field(row, "reason")),
        expires_at=as_utc(_field(row, "expires_at")),
    )
