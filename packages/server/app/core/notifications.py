"""Capsule invite notifications, handed to the delivery service via Redis."""

from __future__ import annotations

import json
from typing import Optional

import structlog

from app.core.config import get_settings
from app.core.events import user_channel
from app.core.redis import get_redis
from capsules_shared.schemas.capsules import MemberRequestView

log = structlog.get_logger()


class RedisInviteNotifier:
    """Pushes invite notifications onto a Redis list and pings the invitee.

    The delivery service consumes the list; the pub/sub ping lets any open
    client refresh its invite badge right away.
    """

    async def notify_invite(
        self, request: MemberRequestView, *, capsule_name: Optional[str] = None
    ) -> None:
        settings = get_settings()
        body = json.dumps(
            {
                "kind": "capsule_invite",
                "request_id": request.id,
                "capsule_id": request.capsule_id,
                "capsule_name": capsule_name,
                "recipient_id": request.requester_id,
                "inviter_id": request.initiator_id,
                "role": request.role.value,
            }
        )

        redis = await get_redis()
        async with redis.pipeline() as pipe:
            pipe.rpush(settings.invite_notification_key, body)
            pipe.publish(user_channel(request.requester_id), body)
            await pipe.execute()

        log.info(
            "capsule.invite.notified",
            capsule_id=request.capsule_id,
            recipient_id=request.requester_id,
        )
