"""
Service tests for the social graph.

Tests cover:
- Friend request lifecycle (send, accept, decline, cancel, re-send)
- Mutual requests collapsing into a friendship
- Friend removal
- Follows and their restore-in-place behavior
- Blocks: cleanup, event addressing, reason retention, unblock
- Writes racing a block are compensated
- Event publishing goes through the dispatcher and never fails the caller
"""

from __future__ import annotations

import pytest

from app.core.errors import SocialGraphError
from app.services.edges import EdgeOutcome, ensure_edge
from app.services.social_graph import SocialGraphService
from app.stores.records import EdgeKind
from capsules_shared.schemas.common import ErrorCode
from capsules_shared.schemas.social import FriendRequestStatus, GraphEventType
from fakes import InMemorySocialGraphStore


class BlockAppearsStore(InMemorySocialGraphStore):
    """Reports no block on the first check and a block on every later one."""

    def __init__(self) -> None:
        super().__init__()
        self.block_checks = 0

    async def has_active_block_between(self, user_a: str, user_b: str) -> bool:
        self.block_checks += 1
        return self.block_checks > 1


class FailingPublisher:
    async def publish_graph_events(self, events) -> None:
        raise ConnectionError("redis down")


async def expect_error(code: ErrorCode, coro):
    with pytest.raises(SocialGraphError) as exc_info:
        await coro
    assert exc_info.value.code == code
    return exc_info.value


def friend_ids(snapshot):
    return [f.user_id for f in snapshot.friends]


# ---------------------------------------------------------------------------
# ensure_edge
# ---------------------------------------------------------------------------


class TestEnsureEdge:
    @pytest.mark.asyncio
    async def test_insert_then_unchanged(self, graph_store):
        first = await ensure_edge(graph_store, EdgeKind.FOLLOW, "a", "b")
        second = await ensure_edge(graph_store, EdgeKind.FOLLOW, "a", "b")
        assert first.outcome == EdgeOutcome.CREATED
        assert second.outcome == EdgeOutcome.UNCHANGED
        assert second.changed is False
        assert second.edge.id == first.edge.id

    @pytest.mark.asyncio
    async def test_restore_keeps_row_and_created_at(self, graph_store):
        first = await ensure_edge(graph_store, EdgeKind.FOLLOW, "a", "b")
        await graph_store.soft_delete_edge(EdgeKind.FOLLOW, "a", "b")
        restored = await ensure_edge(graph_store, EdgeKind.FOLLOW, "a", "b")
        assert restored.outcome == EdgeOutcome.RESTORED
        assert restored.edge.id == first.edge.id
        assert restored.edge.created_at == first.edge.created_at
        assert len(graph_store.edges(EdgeKind.FOLLOW, "a", "b")) == 1

    @pytest.mark.asyncio
    async def test_restore_values_applied(self, graph_store):
        await ensure_edge(graph_store, EdgeKind.BLOCK, "a", "b", values={"reason": "spam"})
        await graph_store.soft_delete_edge(EdgeKind.BLOCK, "a", "b")
        restored = await ensure_edge(
            graph_store, EdgeKind.BLOCK, "a", "b", values={"reason": None}, restore_values={}
        )
        assert restored.edge.reason == "spam"


# ---------------------------------------------------------------------------
# Friend requests
# ---------------------------------------------------------------------------


class TestFriendRequests:
    @pytest.mark.asyncio
    async def test_send(self, social, publisher, dispatcher, user_ids):
        alice, bob = user_ids(2)
        snapshot = await social.send_friend_request(alice, bob, "  hi  ")
        assert [r.recipient_id for r in snapshot.outgoing_requests] == [bob]
        assert snapshot.outgoing_requests[0].message == "hi"

        bob_view = await social.list_social_graph(bob)
        assert [r.requester_id for r in bob_view.incoming_requests] == [alice]

        await dispatcher.drain()
        assert publisher.types_for(alice) == ["friend.request.created"]
        assert publisher.types_for(bob) == ["friend.request.created"]
        incoming = next(e for e in publisher.events if e.user_id == bob)
        assert incoming.payload["direction"] == "incoming"

    @pytest.mark.asyncio
    async def test_send_twice_is_idempotent(self, social, graph_store, publisher, dispatcher, user_ids):
        alice, bob = user_ids(2)
        await social.send_friend_request(alice, bob)
        await social.send_friend_request(alice, bob)
        await dispatcher.drain()
        assert len(graph_store.edges(EdgeKind.FRIEND_REQUEST, alice, bob)) == 1
        assert len(publisher.batches) == 1

    @pytest.mark.asyncio
    async def test_send_to_self(self, social, user_ids):
        alice = user_ids()
        await expect_error(ErrorCode.SELF_TARGET, social.send_friend_request(alice, alice))

    @pytest.mark.asyncio
    async def test_send_when_blocked(self, social, user_ids):
        alice, bob = user_ids(2)
        await social.block_user(bob, alice)
        await expect_error(ErrorCode.FORBIDDEN, social.send_friend_request(alice, bob))

    @pytest.mark.asyncio
    async def test_send_to_friend(self, social, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        await social.accept_friend_request(bob, sent.outgoing_requests[0].id)
        await expect_error(ErrorCode.CONFLICT, social.send_friend_request(alice, bob))

    @pytest.mark.asyncio
    async def test_anonymous_actor(self, social, user_ids):
        await expect_error(ErrorCode.FORBIDDEN, social.send_friend_request(None, user_ids()))

    @pytest.mark.asyncio
    async def test_missing_target(self, social, user_ids):
        await expect_error(ErrorCode.INVALID, social.send_friend_request(user_ids(), " "))

    @pytest.mark.asyncio
    async def test_accept(self, social, graph_store, publisher, dispatcher, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        request_id = sent.outgoing_requests[0].id

        snapshot = await social.accept_friend_request(bob, request_id)
        assert friend_ids(snapshot) == [alice]
        assert snapshot.friends[0].request_id == request_id
        assert snapshot.incoming_requests == []
        assert friend_ids(await social.list_social_graph(alice)) == [bob]

        request = await graph_store.get_edge(EdgeKind.FRIEND_REQUEST, request_id)
        assert request.status == FriendRequestStatus.ACCEPTED
        assert request.accepted_at is not None

        await dispatcher.drain()
        assert publisher.types_for(bob)[-2:] == ["friend.request.updated", "friendship.created"]
        assert "friendship.created" in publisher.types_for(alice)

    @pytest.mark.asyncio
    async def test_requester_cannot_accept(self, social, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        await expect_error(
            ErrorCode.FORBIDDEN, social.accept_friend_request(alice, sent.outgoing_requests[0].id)
        )

    @pytest.mark.asyncio
    async def test_stranger_cannot_see_request(self, social, user_ids):
        alice, bob, carol = user_ids(3)
        sent = await social.send_friend_request(alice, bob)
        await expect_error(
            ErrorCode.NOT_FOUND, social.accept_friend_request(carol, sent.outgoing_requests[0].id)
        )

    @pytest.mark.asyncio
    async def test_accept_twice_is_conflict(self, social, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        request_id = sent.outgoing_requests[0].id
        await social.accept_friend_request(bob, request_id)
        await expect_error(ErrorCode.CONFLICT, social.accept_friend_request(bob, request_id))

    @pytest.mark.asyncio
    async def test_accept_when_blocked(self, social, graph_store, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        await ensure_edge(graph_store, EdgeKind.BLOCK, alice, bob)
        await expect_error(
            ErrorCode.FORBIDDEN, social.accept_friend_request(bob, sent.outgoing_requests[0].id)
        )

    @pytest.mark.asyncio
    async def test_mutual_requests_become_friendship(self, social, graph_store, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)

        snapshot = await social.send_friend_request(bob, alice)
        assert friend_ids(snapshot) == [alice]
        assert snapshot.outgoing_requests == []
        assert graph_store.edges(EdgeKind.FRIEND_REQUEST, bob, alice) == []
        request = await graph_store.get_edge(EdgeKind.FRIEND_REQUEST, sent.outgoing_requests[0].id)
        assert request.status == FriendRequestStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_decline_and_resend(self, social, graph_store, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        request_id = sent.outgoing_requests[0].id

        declined = await social.decline_friend_request(bob, request_id)
        assert declined.incoming_requests == []
        assert (await social.list_social_graph(alice)).outgoing_requests == []

        resent = await social.send_friend_request(alice, bob)
        assert resent.outgoing_requests[0].id == request_id
        assert resent.outgoing_requests[0].status == FriendRequestStatus.PENDING
        assert resent.outgoing_requests[0].responded_at is None
        assert len(graph_store.edges(EdgeKind.FRIEND_REQUEST, alice, bob)) == 1

    @pytest.mark.asyncio
    async def test_requester_cannot_decline(self, social, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        await expect_error(
            ErrorCode.FORBIDDEN, social.decline_friend_request(alice, sent.outgoing_requests[0].id)
        )

    @pytest.mark.asyncio
    async def test_cancel(self, social, publisher, dispatcher, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        snapshot = await social.cancel_friend_request(alice, sent.outgoing_requests[0].id)
        assert snapshot.outgoing_requests == []

        await dispatcher.drain()
        assert publisher.types_for(bob)[-1] == "friend.request.removed"

    @pytest.mark.asyncio
    async def test_recipient_cannot_cancel(self, social, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        await expect_error(
            ErrorCode.FORBIDDEN, social.cancel_friend_request(bob, sent.outgoing_requests[0].id)
        )

    @pytest.mark.asyncio
    async def test_cancel_closed_request(self, social, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        request_id = sent.outgoing_requests[0].id
        await social.cancel_friend_request(alice, request_id)
        await expect_error(ErrorCode.CONFLICT, social.cancel_friend_request(alice, request_id))


# ---------------------------------------------------------------------------
# Friendships
# ---------------------------------------------------------------------------


class TestFriendships:
    @pytest.mark.asyncio
    async def test_remove_friend(self, social, graph_store, publisher, dispatcher, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        await social.accept_friend_request(bob, sent.outgoing_requests[0].id)

        snapshot = await social.remove_friend(alice, bob)
        assert snapshot.friends == []
        assert await social.list_friends(bob) == []
        assert all(r["deleted_at"] is not None for r in graph_store.edges(EdgeKind.FRIENDSHIP, bob, alice))

        await dispatcher.drain()
        assert publisher.types_for(bob)[-1] == "friendship.removed"

    @pytest.mark.asyncio
    async def test_remove_non_friend(self, social, user_ids):
        alice, bob = user_ids(2)
        await expect_error(ErrorCode.NOT_FOUND, social.remove_friend(alice, bob))

    @pytest.mark.asyncio
    async def test_refriend_after_removal(self, social, graph_store, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        await social.accept_friend_request(bob, sent.outgoing_requests[0].id)
        await social.remove_friend(bob, alice)

        again = await social.send_friend_request(alice, bob)
        assert again.outgoing_requests[0].id == sent.outgoing_requests[0].id
        await social.accept_friend_request(bob, again.outgoing_requests[0].id)
        assert friend_ids(await social.list_social_graph(alice)) == [bob]
        assert len(graph_store.edges(EdgeKind.FRIENDSHIP, alice, bob)) == 1


# ---------------------------------------------------------------------------
# Follows
# ---------------------------------------------------------------------------


class TestFollows:
    @pytest.mark.asyncio
    async def test_follow_and_unfollow(self, social, publisher, dispatcher, user_ids):
        alice, bob = user_ids(2)
        snapshot = await social.follow_user(alice, bob)
        assert [f.user_id for f in snapshot.following] == [bob]
        assert [f.user_id for f in (await social.list_social_graph(bob)).followers] == [alice]

        snapshot = await social.unfollow_user(alice, bob)
        assert snapshot.following == []

        await dispatcher.drain()
        states = [e.payload["state"] for e in publisher.events if e.user_id == bob]
        assert states == ["follow", "unfollow"]

    @pytest.mark.asyncio
    async def test_refollow_restores_row(self, social, graph_store, user_ids):
        alice, bob = user_ids(2)
        first = await social.follow_user(alice, bob)
        await social.unfollow_user(alice, bob)
        second = await social.follow_user(alice, bob)
        assert second.following[0].since == first.following[0].since
        assert len(graph_store.edges(EdgeKind.FOLLOW, alice, bob)) == 1

    @pytest.mark.asyncio
    async def test_follow_twice_publishes_once(self, social, publisher, dispatcher, user_ids):
        alice, bob = user_ids(2)
        await social.follow_user(alice, bob)
        await social.follow_user(alice, bob)
        await dispatcher.drain()
        assert len(publisher.batches) == 1

    @pytest.mark.asyncio
    async def test_unfollow_without_follow(self, social, publisher, dispatcher, user_ids):
        alice, bob = user_ids(2)
        await social.unfollow_user(alice, bob)
        await dispatcher.drain()
        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_follow_blocked(self, social, user_ids):
        alice, bob = user_ids(2)
        await social.block_user(alice, bob)
        await expect_error(ErrorCode.FORBIDDEN, social.follow_user(bob, alice))

    @pytest.mark.asyncio
    async def test_follow_self(self, social, user_ids):
        alice = user_ids()
        await expect_error(ErrorCode.SELF_TARGET, social.follow_user(alice, alice))


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------


class TestBlocks:
    @pytest.mark.asyncio
    async def test_block_clears_relationships(self, social, publisher, dispatcher, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        await social.accept_friend_request(bob, sent.outgoing_requests[0].id)
        await social.follow_user(alice, bob)
        await social.follow_user(bob, alice)
        await dispatcher.drain()
        publisher.batches.clear()

        snapshot = await social.block_user(alice, bob, "  rude  ")
        assert snapshot.friends == []
        assert snapshot.following == [] and snapshot.followers == []
        assert [b.user_id for b in snapshot.blocked] == [bob]
        assert snapshot.blocked[0].reason == "rude"

        bob_view = await social.list_social_graph(bob)
        assert bob_view.friends == [] and bob_view.following == []

        await dispatcher.drain()
        assert "block.updated" in publisher.types_for(alice)
        assert "block.updated" not in publisher.types_for(bob)
        assert "friendship.removed" in publisher.types_for(bob)

    @pytest.mark.asyncio
    async def test_block_closes_pending_requests(self, social, graph_store, user_ids):
        alice, bob, carol = user_ids(3)
        outgoing = await social.send_friend_request(alice, bob)
        incoming = await social.send_friend_request(carol, alice)

        await social.block_user(alice, bob)
        await social.block_user(alice, carol)

        closed_out = await graph_store.get_edge(EdgeKind.FRIEND_REQUEST, outgoing.outgoing_requests[0].id)
        closed_in = await graph_store.get_edge(EdgeKind.FRIEND_REQUEST, incoming.outgoing_requests[0].id)
        assert closed_out.status == FriendRequestStatus.CANCELLED
        assert closed_in.status == FriendRequestStatus.DECLINED
        snapshot = await social.list_social_graph(alice)
        assert snapshot.incoming_requests == [] and snapshot.outgoing_requests == []

    @pytest.mark.asyncio
    async def test_reblock_keeps_reason(self, social, user_ids):
        alice, bob = user_ids(2)
        await social.block_user(alice, bob, "spam")
        await social.unblock_user(alice, bob)
        snapshot = await social.block_user(alice, bob)
        assert snapshot.blocked[0].reason == "spam"

    @pytest.mark.asyncio
    async def test_block_is_idempotent(self, social, graph_store, user_ids):
        alice, bob = user_ids(2)
        await social.block_user(alice, bob)
        await social.block_user(alice, bob)
        assert len(graph_store.edges(EdgeKind.BLOCK, alice, bob)) == 1

    @pytest.mark.asyncio
    async def test_unblock_does_not_restore_friendship(self, social, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        await social.accept_friend_request(bob, sent.outgoing_requests[0].id)
        await social.block_user(alice, bob)

        snapshot = await social.unblock_user(alice, bob)
        assert snapshot.blocked == []
        assert snapshot.friends == []
        # requests work again once unblocked
        again = await social.send_friend_request(bob, alice)
        assert [r.recipient_id for r in again.outgoing_requests] == [alice]

    @pytest.mark.asyncio
    async def test_unblock_without_block(self, social, publisher, dispatcher, user_ids):
        alice, bob = user_ids(2)
        await social.unblock_user(alice, bob)
        await dispatcher.drain()
        assert publisher.events == []


# ---------------------------------------------------------------------------
# Races with blocks
# ---------------------------------------------------------------------------


class TestBlockRaces:
    @pytest.mark.asyncio
    async def test_follow_reverted_when_block_appears(self, dispatcher, user_ids):
        store = BlockAppearsStore()
        service = SocialGraphService(store, dispatcher=dispatcher)
        alice, bob = user_ids(2)

        await expect_error(ErrorCode.FORBIDDEN, service.follow_user(alice, bob))
        rows = store.edges(EdgeKind.FOLLOW, alice, bob)
        assert len(rows) == 1
        assert rows[0]["deleted_at"] is not None

    @pytest.mark.asyncio
    async def test_friendship_reverted_when_block_appears(self, dispatcher, user_ids):
        store = BlockAppearsStore()
        alice, bob = user_ids(2)
        request = await ensure_edge(
            store, EdgeKind.FRIEND_REQUEST, alice, bob, values={"status": FriendRequestStatus.PENDING}
        )
        publisher_calls = []

        class Publisher:
            async def publish_graph_events(self, events):
                publisher_calls.append(events)

        service = SocialGraphService(store, dispatcher=dispatcher, publisher=Publisher())
        await expect_error(ErrorCode.FORBIDDEN, service.accept_friend_request(bob, request.edge.id))

        assert all(r["deleted_at"] is not None for r in store.edges(EdgeKind.FRIENDSHIP, alice, bob))
        assert all(r["deleted_at"] is not None for r in store.edges(EdgeKind.FRIENDSHIP, bob, alice))
        await dispatcher.drain()
        assert publisher_calls == []


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class TestPublishing:
    @pytest.mark.asyncio
    async def test_publisher_failure_is_isolated(self, graph_store, dispatcher, user_ids):
        service = SocialGraphService(graph_store, dispatcher=dispatcher, publisher=FailingPublisher())
        alice, bob = user_ids(2)
        snapshot = await service.follow_user(alice, bob)
        assert [f.user_id for f in snapshot.following] == [bob]

        await dispatcher.drain()
        assert dispatcher.failed == 1

    @pytest.mark.asyncio
    async def test_event_types_are_known(self, social, publisher, dispatcher, user_ids):
        alice, bob = user_ids(2)
        sent = await social.send_friend_request(alice, bob)
        await social.accept_friend_request(bob, sent.outgoing_requests[0].id)
        await social.block_user(alice, bob)
        await dispatcher.drain()
        known = {t.value for t in GraphEventType}
        assert {e.type.value for e in publisher.events} <= known
