"""
Tests for the Redis-backed collaborators.

Tests cover:
- Graph events: per-user channel, buffer trimming, one pipeline per batch
- Invite notifications: delivery list plus invitee ping
- Knowledge refresh: per-capsule job ids, duplicate suppression while queued,
  re-enqueue after a run, worker task
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from structlog.testing import capture_logs

from app.core.events import (
    BUFFER_SIZE,
    REDIS_BUFFER_KEY_PREFIX,
    RedisGraphEventPublisher,
    serialize_event,
    user_channel,
)
from app.core.notifications import RedisInviteNotifier
from app.tasks.knowledge_refresh import (
    STALE_KEY_PREFIX,
    ArqKnowledgeRefreshQueue,
    WorkerSettings,
    refresh_capsule_knowledge,
    refresh_job_id,
)
from capsules_shared.schemas.capsules import MemberRequestView, RequestOrigin, RequestStatus
from capsules_shared.schemas.social import GraphEvent, GraphEventType


class ArqPoolStandIn:
    """Refuses a job id while its job key or stored result exists, as arq does."""

    def __init__(self, keep_result: int):
        self.keep_result = keep_result
        self.keys: set[str] = set()
        self.enqueued: list[str] = []

    async def enqueue_job(self, function, *args, _job_id=None):
        if _job_id in self.keys:
            return None
        self.keys.add(_job_id)
        self.enqueued.append(_job_id)
        return MagicMock(job_id=_job_id)

    def run(self, job_id: str) -> None:
        self.keys.discard(job_id)
        if self.keep_result:
            self.keys.add(job_id)


def mock_redis():
    """A redis client whose pipeline() works as an async context manager."""
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    redis = MagicMock()
    redis.pipeline.return_value.__aenter__.return_value = pipe
    return redis, pipe


# ---------------------------------------------------------------------------
# Graph events
# ---------------------------------------------------------------------------


class TestGraphEventPublisher:
    def test_user_channel(self):
        assert user_channel("u1") == "capsules:user:u1"

    def test_serialize_event(self):
        event = GraphEvent(type=GraphEventType.FOLLOW_UPDATED, user_id="u1", payload={"state": "follow"})
        data = json.loads(serialize_event(event))
        assert data["type"] == "follow.updated"
        assert data["user_id"] == "u1"
        assert data["payload"] == {"state": "follow"}
        assert "timestamp" in data

    @pytest.mark.asyncio
    async def test_publish_batch(self):
        redis, pipe = mock_redis()
        events = [
            GraphEvent(type=GraphEventType.FRIENDSHIP_CREATED, user_id="a", payload={"friend_id": "b"}),
            GraphEvent(type=GraphEventType.FRIENDSHIP_CREATED, user_id="b", payload={"friend_id": "a"}),
        ]

        with patch("app.core.events.get_redis", AsyncMock(return_value=redis)):
            await RedisGraphEventPublisher().publish_graph_events(events)

        assert redis.pipeline.call_count == 1
        pipe.execute.assert_awaited_once()
        channels = [c.args[0] for c in pipe.publish.call_args_list]
        assert channels == ["capsules:user:a", "capsules:user:b"]
        pipe.ltrim.assert_any_call(f"{REDIS_BUFFER_KEY_PREFIX}a", 0, BUFFER_SIZE - 1)
        assert pipe.lpush.call_count == 2

    @pytest.mark.asyncio
    async def test_empty_batch_skips_redis(self):
        get_redis = AsyncMock()
        with patch("app.core.events.get_redis", get_redis):
            await RedisGraphEventPublisher().publish_graph_events([])
        get_redis.assert_not_awaited()


# ---------------------------------------------------------------------------
# Invite notifications
# ---------------------------------------------------------------------------


class TestInviteNotifier:
    @pytest.mark.asyncio
    async def test_notify_invite(self):
        redis, pipe = mock_redis()
        invite = MemberRequestView(
            id="r1",
            capsule_id="c1",
            requester_id="invitee",
            status=RequestStatus.PENDING,
            origin=RequestOrigin.OWNER_INVITE,
            initiator_id="owner",
        )

        with patch("app.core.notifications.get_redis", AsyncMock(return_value=redis)):
            await RedisInviteNotifier().notify_invite(invite, capsule_name="Night Owls")

        key, body = pipe.rpush.call_args.args
        assert key == "capsules:notifications:invites"
        assert json.loads(body) == {
            "kind": "capsule_invite",
            "request_id": "r1",
            "capsule_id": "c1",
            "capsule_name": "Night Owls",
            "recipient_id": "invitee",
            "inviter_id": "owner",
            "role": "member",
        }
        pipe.publish.assert_called_once_with("capsules:user:invitee", body)
        pipe.execute.assert_awaited_once()


# ---------------------------------------------------------------------------
# Knowledge refresh
# ---------------------------------------------------------------------------


class TestKnowledgeRefresh:
    def test_job_id_is_per_capsule(self):
        assert refresh_job_id("c1") == "knowledge-refresh:c1"
        assert refresh_job_id("c1") != refresh_job_id("c2")

    @pytest.mark.asyncio
    async def test_enqueue(self):
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(return_value=MagicMock())

        with patch("app.tasks.knowledge_refresh.get_arq_pool", AsyncMock(return_value=pool)):
            await ArqKnowledgeRefreshQueue().enqueue_knowledge_refresh("c1", "Night Owls")

        pool.enqueue_job.assert_awaited_once_with(
            "refresh_capsule_knowledge", "c1", "Night Owls", _job_id="knowledge-refresh:c1"
        )

    @pytest.mark.asyncio
    async def test_enqueue_duplicate_is_quiet(self):
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(return_value=None)

        with patch("app.tasks.knowledge_refresh.get_arq_pool", AsyncMock(return_value=pool)):
            await ArqKnowledgeRefreshQueue().enqueue_knowledge_refresh("c1", None)

        pool.enqueue_job.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_worker_task_marks_stale(self):
        redis = MagicMock()
        redis.set = AsyncMock()

        assert await refresh_capsule_knowledge({"redis": redis}, "c1", "Night Owls") is True
        key = redis.set.call_args.args[0]
        assert key == f"{STALE_KEY_PREFIX}c1"
        assert redis.set.call_args.kwargs["ex"] == 86400

    def test_worker_settings(self):
        assert refresh_capsule_knowledge in WorkerSettings.functions
        assert WorkerSettings.queue_name == "capsules:knowledge"
        assert WorkerSettings.keep_result == 0

    @pytest.mark.asyncio
    async def test_refresh_after_run_is_enqueued(self):
        pool = ArqPoolStandIn(keep_result=WorkerSettings.keep_result)
        queue = ArqKnowledgeRefreshQueue()

        with patch("app.tasks.knowledge_refresh.get_arq_pool", AsyncMock(return_value=pool)):
            with capture_logs() as logs:
                await queue.enqueue_knowledge_refresh("c1", "Night Owls")
                pool.run(refresh_job_id("c1"))
                await queue.enqueue_knowledge_refresh("c1", "Night Owls")

        assert pool.enqueued == ["knowledge-refresh:c1", "knowledge-refresh:c1"]
        assert [e["event"] for e in logs] == ["knowledge_refresh.enqueued", "knowledge_refresh.enqueued"]

    @pytest.mark.asyncio
    async def test_burst_while_queued_collapses(self):
        pool = ArqPoolStandIn(keep_result=WorkerSettings.keep_result)
        queue = ArqKnowledgeRefreshQueue()

        with patch("app.tasks.knowledge_refresh.get_arq_pool", AsyncMock(return_value=pool)):
            with capture_logs() as logs:
                await queue.enqueue_knowledge_refresh("c1", None)
                await queue.enqueue_knowledge_refresh("c1", None)
                await queue.enqueue_knowledge_refresh("c2", None)

        assert pool.enqueued == ["knowledge-refresh:c1", "knowledge-refresh:c2"]
        assert "knowledge_refresh.already_queued" in [e["event"] for e in logs]
