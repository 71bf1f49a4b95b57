"""SQL-backed SocialGraphStore over the four edge tables."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, or_, update
from sqlmodel import SQLModel, select

from app.models.base import new_id
from app.models.social import FriendRequest, Friendship, UserBlock, UserFollow
from app.stores.mapping import EDGE_COLUMNS, map_edge_row
from app.stores.records import EdgeKind, GraphEdge
from app.stores.sql import SqlStore, insert_for, utcnow
from capsules_shared.schemas.social import FriendRequestStatus

EDGE_MODELS: dict[EdgeKind, type[SQLModel]] = {
    EdgeKind.FRIENDSHIP: Friendship,
    EdgeKind.FRIEND_REQUEST: FriendRequest,
    EdgeKind.FOLLOW: UserFollow,
    EdgeKind.BLOCK: UserBlock,
}

# Columns an edge may set on insert/restore, per kind
EDGE_MUTABLE_FIELDS: dict[EdgeKind, frozenset[str]] = {
    EdgeKind.FRIENDSHIP: frozenset({"request_id"}),
    EdgeKind.FRIEND_REQUEST: frozenset({"status", "message", "responded_at", "accepted_at"}),
    EdgeKind.FOLLOW: frozenset({"muted_at"}),
    EdgeKind.BLOCK: frozenset({"reason", "expires_at"}),
}


def _columns(kind: EdgeKind):
    model = EDGE_MODELS[kind]
    source_col, target_col = EDGE_COLUMNS[kind]
    return model, getattr(model, source_col), getattr(model, target_col)


def _clean_values(kind: EdgeKind, values: dict[str, Any]) -> dict[str, Any]:
    unknown = set(values) - EDGE_MUTABLE_FIELDS[kind]
    if unknown:
        raise ValueError(f"Unknown {kind.value} fields: {sorted(unknown)}")
    return {
        key: value.value if isinstance(value, FriendRequestStatus) else value
        for key, value in values.items()
    }


class SqlSocialGraphStore(SqlStore):
    async def get_edge(self, kind: EdgeKind, edge_id: str) -> Optional[GraphEdge]:
        model = EDGE_MODELS[kind]
        row = await self._first(select(model).where(model.id == edge_id))
        return map_edge_row(kind, row)

    async def find_latest_edge(
        self, kind: EdgeKind, source_id: str, target_id: str
    ) -> Optional[GraphEdge]:
        model, source, target = _columns(kind)
        row = await self._first(
            select(model)
            .where(source == source_id, target == target_id)
            .order_by(model.created_at.desc())
            .limit(1)
        )
        return map_edge_row(kind, row)

    async def insert_edge(
        self, kind: EdgeKind, source_id: str, target_id: str, values: dict[str, Any]
    ) -> GraphEdge:
        model = EDGE_MODELS[kind]
        source_col, target_col = EDGE_COLUMNS[kind]
        stmt = (
            insert_for(self.session, model)
            .values(
                id=new_id(),
                created_at=utcnow(),
                deleted_at=None,
                **{source_col: source_id, target_col: target_id},
                **_clean_values(kind, values),
            )
            .on_conflict_do_nothing(index_elements=[source_col, target_col])
        )
        await self._write(stmt)
        # On conflict this is the concurrent winner's row
        edge = await self.find_latest_edge(kind, source_id, target_id)
        assert edge is not None
        return edge

    async def restore_edge(
        self, kind: EdgeKind, edge_id: str, values: dict[str, Any]
    ) -> Optional[GraphEdge]:
        model = EDGE_MODELS[kind]
        await self._write(
            update(model)
            .where(model.id == edge_id)
            .values(deleted_at=None, **_clean_values(kind, values))
        )
        return await self.get_edge(kind, edge_id)

    async def soft_delete_edge(self, kind: EdgeKind, source_id: str, target_id: str) -> int:
        model, source, target = _columns(kind)
        return await self._write(
            update(model)
            .where(source == source_id, target == target_id, model.deleted_at.is_(None))
            .values(deleted_at=utcnow())
        )

    async def update_pending_request(
        self, request_id: str, status: FriendRequestStatus, at: datetime
    ) -> Optional[GraphEdge]:
        values: dict[str, Any] = {"status": status.value, "responded_at": at}
        if status == FriendRequestStatus.ACCEPTED:
            values["accepted_at"] = at
        else:
            # declined and cancelled requests are tombstoned
            values["deleted_at"] = at

        updated = await self._write(
            update(FriendRequest)
            .where(
                FriendRequest.id == request_id,
                FriendRequest.status == FriendRequestStatus.PENDING.value,
                FriendRequest.deleted_at.is_(None),
            )
            .values(**values)
        )
        if not updated:
            return None
        return await self.get_edge(EdgeKind.FRIEND_REQUEST, request_id)

    async def close_pending_requests(
        self, requester_id: str, recipient_id: str, status: FriendRequestStatus, at: datetime
    ) -> list[GraphEdge]:
        pending = await self._all(
            select(FriendRequest).where(
                FriendRequest.requester_id == requester_id,
                FriendRequest.recipient_id == recipient_id,
                FriendRequest.status == FriendRequestStatus.PENDING.value,
                FriendRequest.deleted_at.is_(None),
            )
        )
        closed: list[GraphEdge] = []
        for row in pending:
            edge = await self.update_pending_request(row.id, status, at)
            if edge is not None:
                closed.append(edge)
        return closed

    async def has_active_block_between(self, user_a: str, user_b: str) -> bool:
        row = await self._first(
            select(UserBlock)
            .where(
                or_(
                    and_(UserBlock.blocker_user_id == user_a, UserBlock.blocked_user_id == user_b),
                    and_(UserBlock.blocker_user_id == user_b, UserBlock.blocked_user_id == user_a),
                ),
                UserBlock.deleted_at.is_(None),
            )
            .limit(1)
        )
        return row is not None

    async def list_active_edges(
        self,
        kind: EdgeKind,
        *,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> list[GraphEdge]:
        model, source, target = _columns(kind)
        stmt = select(model).where(model.deleted_at.is_(None))
        if source_id is not None:
            stmt = stmt.where(source == source_id)
        if target_id is not None:
            stmt = stmt.where(target == target_id)
        if kind == EdgeKind.FRIEND_REQUEST:
            stmt = stmt.where(FriendRequest.status == FriendRequestStatus.PENDING.value)
        rows = await self._all(stmt.order_by(model.created_at))
        edges = (map_edge_row(kind, row) for row in rows)
        return [edge for edge in edges if edge is not None]
