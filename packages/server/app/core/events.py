"""
Realtime social graph events over Redis Pub/Sub.

Each event is addressed to one user and published on that user's channel.
The most recent events per user are also kept in a short Redis buffer so a
client that reconnects can catch up.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Sequence

import structlog

from app.core.config import get_settings
from app.core.redis import get_redis
from capsules_shared.schemas.social import GraphEvent

log = structlog.get_logger()

REDIS_BUFFER_KEY_PREFIX = "capsules:graph:buffer:"
BUFFER_SIZE = 100
BUFFER_TTL_SECONDS = 86400


def user_channel(user_id: str) -> str:
    return f"{get_settings().realtime_channel_prefix}{user_id}"


def serialize_event(event: GraphEvent) -> str:
    return json.dumps(
        {
            "type": event.type.value,
            "user_id": event.user_id,
            "payload": event.payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        default=str,
    )


class RedisGraphEventPublisher:
    """Publishes graph events through one Redis pipeline per batch."""

    async def publish_graph_events(self, events: Sequence[GraphEvent]) -> None:
        if not events:
            return

        redis = await get_redis()
        async with redis.pipeline() as pipe:
            for event in events:
                event_json = serialize_event(event)
                buffer_key = f"{REDIS_BUFFER_KEY_PREFIX}{event.user_id}"
                pipe.lpush(buffer_key, event_json)
                pipe.ltrim(buffer_key, 0, BUFFER_SIZE - 1)
                pipe.expire(buffer_key, BUFFER_TTL_SECONDS)
                pipe.publish(user_channel(event.user_id), event_json)
            await pipe.execute()

        log.debug("graph.events_published", count=len(events))
