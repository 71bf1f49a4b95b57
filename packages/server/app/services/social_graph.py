"""
Social graph workflows: friend requests, friendships, follows and blocks.

Edges are only ever written through ensure_edge (restore-or-insert) and
tombstoned through the store, never destroyed. A block always wins: it
clears friendships, follows and pending requests in both directions, and
writes that race a block are undone once the block is visible.
"""

from __future__ import annotations

from datetime import datetime, timezone
from functools import partial
from typing import Optional, Sequence

import structlog

from app.core.dispatch import SideEffectDispatcher
from app.core.errors import SocialGraphError
from app.services.collaborators import GraphEventPublisher
from app.services.edges import ensure_edge
from app.services.validation import normalize_message, require_actor, require_id
from app.stores.base import SocialGraphStore
from app.stores.records import EdgeKind, GraphEdge
from capsules_shared.schemas.social import (
    BlockView,
    FollowView,
    FriendRequestStatus,
    FriendRequestView,
    FriendView,
    GraphEvent,
    GraphEventType,
    RequestDirection,
    SocialGraphSnapshot,
)

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def friend_request_view(edge: GraphEdge) -> FriendRequestView:
    return FriendRequestView(
        id=edge.id,
        requester_id=edge.source_id,
        recipient_id=edge.target_id,
        status=edge.status or FriendRequestStatus.PENDING,
        message=edge.message,
        created_at=edge.created_at,
        responded_at=edge.responded_at,
        accepted_at=edge.accepted_at,
    )


def _request_event(
    event_type: GraphEventType, edge: GraphEdge, user_id: str
) -> GraphEvent:
    direction = RequestDirection.OUTGOING if user_id == edge.source_id else RequestDirection.INCOMING
    return GraphEvent(
        type=event_type,
        user_id=user_id,
        payload={
            "direction": direction.value,
            "request": friend_request_view(edge).model_dump(mode="json"),
        },
    )


def _request_events(event_type: GraphEventType, edge: GraphEdge) -> list[GraphEvent]:
    return [
        _request_event(event_type, edge, edge.source_id),
        _request_event(event_type, edge, edge.target_id),
    ]


def _friendship_events(
    event_type: GraphEventType, user_a: str, user_b: str, request_id: Optional[str] = None
) -> list[GraphEvent]:
    return [
        GraphEvent(type=event_type, user_id=user_a, payload={"friend_id": user_b, "request_id": request_id}),
        GraphEvent(type=event_type, user_id=user_b, payload={"friend_id": user_a, "request_id": request_id}),
    ]


def _follow_events(follower_id: str, followee_id: str, state: str) -> list[GraphEvent]:
    payload = {"state": state, "follower_id": follower_id, "followee_id": followee_id}
    return [
        GraphEvent(type=GraphEventType.FOLLOW_UPDATED, user_id=follower_id, payload=payload),
        GraphEvent(type=GraphEventType.FOLLOW_UPDATED, user_id=followee_id, payload=payload),
    ]


class SocialGraphService:
    def __init__(
        self,
        store: SocialGraphStore,
        *,
        dispatcher: SideEffectDispatcher,
        publisher: Optional[GraphEventPublisher] = None,
        message_limit: int = 500,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.message_limit = message_limit

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _pair(actor_id: str, target_id: str) -> tuple[str, str]:
        actor = require_actor(actor_id, SocialGraphError)
        target = require_id(target_id, SocialGraphError, "user id")
        if actor == target:
            raise SocialGraphError.self_target("You can't do that to yourself.")
        return actor, target

    def _publish(self, events: Sequence[GraphEvent]) -> None:
        if self.publisher is None or not events:
            return
        self.dispatcher.submit(
            "publish_graph_events",
            partial(self.publisher.publish_graph_events, list(events)),
            count=len(events),
        )

    async def _are_friends(self, user_a: str, user_b: str) -> bool:
        edge = await self.store.find_latest_edge(EdgeKind.FRIENDSHIP, user_a, user_b)
        return edge is not None and edge.is_live

    async def _load_request(self, actor_id: str, request_id: str) -> GraphEdge:
        edge = await self.store.get_edge(EdgeKind.FRIEND_REQUEST, request_id)
        if edge is None or actor_id not in (edge.source_id, edge.target_id):
            raise SocialGraphError.not_found("Friend request not found.")
        return edge

    async def _unfriend(self, user_a: str, user_b: str) -> int:
        removed = await self.store.soft_delete_edge(EdgeKind.FRIENDSHIP, user_a, user_b)
        removed += await self.store.soft_delete_edge(EdgeKind.FRIENDSHIP, user_b, user_a)
        return removed

    async def _accept(self, actor_id: str, request: GraphEdge) -> SocialGraphSnapshot:
        requester_id = request.source_id
        if await self.store.has_active_block_between(actor_id, requester_id):
            raise SocialGraphError.forbidden("You can't accept this friend request.")

        accepted_at = _utcnow()
        accepted = await self.store.update_pending_request(
            request.id, FriendRequestStatus.ACCEPTED, accepted_at
        )
        if accepted is None:
            raise SocialGraphError.conflict("This request is no longer pending.")

        link = {"request_id": request.id}
        await ensure_edge(self.store, EdgeKind.FRIENDSHIP, requester_id, actor_id, values=link)
        await ensure_edge(self.store, EdgeKind.FRIENDSHIP, actor_id, requester_id, values=link)
        reverse = await self.store.close_pending_requests(
            actor_id, requester_id, FriendRequestStatus.CANCELLED, accepted_at
        )

        # a block committed while we were writing wins
        if await self.store.has_active_block_between(actor_id, requester_id):
            await self._unfriend(actor_id, requester_id)
            log.info("graph.friendship.reverted", user_id=actor_id, friend_id=requester_id)
            raise SocialGraphError.forbidden("You can't accept this friend request.")

        events = _request_events(GraphEventType.FRIEND_REQUEST_UPDATED, accepted)
        events += _friendship_events(GraphEventType.FRIENDSHIP_CREATED, requester_id, actor_id, request.id)
        for closed in reverse:
            events += _request_events(GraphEventType.FRIEND_REQUEST_REMOVED, closed)
        self._publish(events)

        log.info("graph.friend_request.accepted", request_id=request.id, user_id=actor_id)
        return await self.list_social_graph(actor_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_social_graph(self, user_id: str) -> SocialGraphSnapshot:
        user_id = require_actor(user_id, SocialGraphError)
        friends = await self.store.list_active_edges(EdgeKind.FRIENDSHIP, source_id=user_id)
        incoming = await self.store.list_active_edges(EdgeKind.FRIEND_REQUEST, target_id=user_id)
        outgoing = await self.store.list_active_edges(EdgeKind.FRIEND_REQUEST, source_id=user_id)
        followers = await self.store.list_active_edges(EdgeKind.FOLLOW, target_id=user_id)
        following = await self.store.list_active_edges(EdgeKind.FOLLOW, source_id=user_id)
        blocked = await self.store.list_active_edges(EdgeKind.BLOCK, source_id=user_id)

        return SocialGraphSnapshot(
            user_id=user_id,
            friends=[
                FriendView(user_id=e.target_id, request_id=e.request_id, since=e.created_at)
                for e in friends
            ],
            incoming_requests=[friend_request_view(e) for e in incoming],
            outgoing_requests=[friend_request_view(e) for e in outgoing],
            followers=[
                FollowView(user_id=e.source_id, since=e.created_at, muted_at=e.muted_at)
                for e in followers
            ],
            following=[
                FollowView(user_id=e.target_id, since=e.created_at, muted_at=e.muted_at)
                for e in following
            ],
            blocked=[
                BlockView(user_id=e.target_id, reason=e.reason, created_at=e.created_at, expires_at=e.expires_at)
                for e in blocked
            ],
        )

    async def list_friends(self, user_id: str) -> list[FriendView]:
        return (await self.list_social_graph(user_id)).friends

    # ------------------------------------------------------------------
    # Friend requests
    # ------------------------------------------------------------------

    async def send_friend_request(
        self, actor_id: str, target_id: str, message: Optional[str] = None
    ) -> SocialGraphSnapshot:
        actor_id, target_id = self._pair(actor_id, target_id)
        text = normalize_message(message, self.message_limit)

        if await self.store.has_active_block_between(actor_id, target_id):
            raise SocialGraphError.forbidden("You can't send a friend request to this person.")
        if await self._are_friends(actor_id, target_id):
            raise SocialGraphError.conflict("You're already friends.")

        reverse = await self.store.find_latest_edge(EdgeKind.FRIEND_REQUEST, target_id, actor_id)
        if reverse is not None and reverse.is_live:
            # they already asked us; treat this as accepting their request
            return await self._accept(actor_id, reverse)

        result = await ensure_edge(
            self.store,
            EdgeKind.FRIEND_REQUEST,
            actor_id,
            target_id,
            values={"status": FriendRequestStatus.PENDING, "message": text},
            restore_values={
                "status": FriendRequestStatus.PENDING,
                "message": text,
                "responded_at": None,
                "accepted_at": None,
            },
        )
        if result.changed:
            self._publish(_request_events(GraphEventType.FRIEND_REQUEST_CREATED, result.edge))
            log.info(
                "graph.friend_request.sent",
                request_id=result.edge.id,
                requester_id=actor_id,
                outcome=result.outcome.value,
            )
        return await self.list_social_graph(actor_id)

    async def accept_friend_request(self, actor_id: str, request_id: str) -> SocialGraphSnapshot:
        actor_id = require_actor(actor_id, SocialGraphError)
        request_id = require_id(request_id, SocialGraphError, "request id")

        request = await self._load_request(actor_id, request_id)
        if request.target_id != actor_id:
            raise SocialGraphError.forbidden("Only the recipient can accept this request.")
        if not request.is_live:
            raise SocialGraphError.conflict("This request is no longer pending.")
        return await self._accept(actor_id, request)

    async def _close_request(
        self,
        actor_id: str,
        request_id: str,
        status: FriendRequestStatus,
    ) -> SocialGraphSnapshot:
        actor_id = require_actor(actor_id, SocialGraphError)
        request_id = require_id(request_id, SocialGraphError, "request id")

        request = await self._load_request(actor_id, request_id)
        expected_actor = request.target_id if status == FriendRequestStatus.DECLINED else request.source_id
        if actor_id != expected_actor:
            if status == FriendRequestStatus.DECLINED:
                raise SocialGraphError.forbidden("Only the recipient can decline this request.")
            raise SocialGraphError.forbidden("Only the sender can cancel this request.")
        if not request.is_live:
            raise SocialGraphError.conflict("This request is no longer pending.")

        closed = await self.store.update_pending_request(request.id, status, _utcnow())
        if closed is None:
            raise SocialGraphError.conflict("This request is no longer pending.")

        self._publish(_request_events(GraphEventType.FRIEND_REQUEST_REMOVED, closed))
        log.info("graph.friend_request.closed", request_id=request.id, status=status.value, user_id=actor_id)
        return await self.list_social_graph(actor_id)

    async def decline_friend_request(self, actor_id: str, request_id: str) -> SocialGraphSnapshot:
        return await self._close_request(actor_id, request_id, FriendRequestStatus.DECLINED)

    async def cancel_friend_request(self, actor_id: str, request_id: str) -> SocialGraphSnapshot:
        return await self._close_request(actor_id, request_id, FriendRequestStatus.CANCELLED)

    async def remove_friend(self, actor_id: str, friend_id: str) -> SocialGraphSnapshot:
        actor_id, friend_id = self._pair(actor_id, friend_id)
        if not await self._are_friends(actor_id, friend_id):
            raise SocialGraphError.not_found("You're not friends with this person.")

        await self._unfriend(actor_id, friend_id)
        self._publish(_friendship_events(GraphEventType.FRIENDSHIP_REMOVED, actor_id, friend_id))
        log.info("graph.friendship.removed", user_id=actor_id, friend_id=friend_id)
        return await self.list_social_graph(actor_id)

    # ------------------------------------------------------------------
    # Follows
    # ------------------------------------------------------------------

    async def follow_user(self, actor_id: str, target_id: str) -> SocialGraphSnapshot:
        actor_id, target_id = self._pair(actor_id, target_id)
        if await self.store.has_active_block_between(actor_id, target_id):
            raise SocialGraphError.forbidden("You can't follow this person.")

        result = await ensure_edge(
            self.store,
            EdgeKind.FOLLOW,
            actor_id,
            target_id,
            restore_values={"muted_at": None},
        )

        if await self.store.has_active_block_between(actor_id, target_id):
            await self.store.soft_delete_edge(EdgeKind.FOLLOW, actor_id, target_id)
            log.info("graph.follow.reverted", follower_id=actor_id, followee_id=target_id)
            raise SocialGraphError.forbidden("You can't follow this person.")

        if result.changed:
            self._publish(_follow_events(actor_id, target_id, "follow"))
            log.info("graph.follow.created", follower_id=actor_id, followee_id=target_id, outcome=result.outcome.value)
        return await self.list_social_graph(actor_id)

    async def unfollow_user(self, actor_id: str, target_id: str) -> SocialGraphSnapshot:
        actor_id, target_id = self._pair(actor_id, target_id)
        if await self.store.soft_delete_edge(EdgeKind.FOLLOW, actor_id, target_id):
            self._publish(_follow_events(actor_id, target_id, "unfollow"))
            log.info("graph.follow.removed", follower_id=actor_id, followee_id=target_id)
        return await self.list_social_graph(actor_id)

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    async def block_user(
        self,
        actor_id: str,
        target_id: str,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> SocialGraphSnapshot:
        actor_id, target_id = self._pair(actor_id, target_id)
        text = normalize_message(reason, self.message_limit)

        restore_values: dict = {"expires_at": expires_at}
        if text is not None:
            restore_values["reason"] = text
        result = await ensure_edge(
            self.store,
            EdgeKind.BLOCK,
            actor_id,
            target_id,
            values={"reason": text, "expires_at": expires_at},
            restore_values=restore_values,
        )

        # cleanup runs even when the block already existed
        now = _utcnow()
        events: list[GraphEvent] = []
        if await self._unfriend(actor_id, target_id):
            events += _friendship_events(GraphEventType.FRIENDSHIP_REMOVED, actor_id, target_id)
        for follower, followee in ((actor_id, target_id), (target_id, actor_id)):
            if await self.store.soft_delete_edge(EdgeKind.FOLLOW, follower, followee):
                events += _follow_events(follower, followee, "unfollow")
        closed = await self.store.close_pending_requests(
            actor_id, target_id, FriendRequestStatus.CANCELLED, now
        )
        closed += await self.store.close_pending_requests(
            target_id, actor_id, FriendRequestStatus.DECLINED, now
        )
        for request in closed:
            events += _request_events(GraphEventType.FRIEND_REQUEST_REMOVED, request)

        events.append(
            GraphEvent(
                type=GraphEventType.BLOCK_UPDATED,
                user_id=actor_id,
                payload={"state": "block", "blocked_id": target_id},
            )
        )
        self._publish(events)
        log.info("graph.block.created", blocker_id=actor_id, blocked_id=target_id, outcome=result.outcome.value)
        return await self.list_social_graph(actor_id)

    async def unblock_user(self, actor_id: str, target_id: str) -> SocialGraphSnapshot:
        """Lift a block. Earlier friendships and follows stay removed."""
        actor_id, target_id = self._pair(actor_id, target_id)
        if await self.store.soft_delete_edge(EdgeKind.BLOCK, actor_id, target_id):
            self._publish(
                [
                    GraphEvent(
                        type=GraphEventType.BLOCK_UPDATED,
                        user_id=actor_id,
                        payload={"state": "unblock", "blocked_id": target_id},
                    )
                ]
            )
            log.info("graph.block.removed", blocker_id=actor_id, blocked_id=target_id)
        return await self.list_social_graph(actor_id)
