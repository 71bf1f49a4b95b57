"""
Capsule engine entry point.

Builds the membership and social graph services over a database session,
with the Redis/ARQ collaborators and the process-wide side effect
dispatcher. Transports (HTTP, RPC, workers) call open_services() per unit
of work and the startup/shutdown hooks around their own lifecycle.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import dispose_engine, get_session_context
from app.core.dispatch import SideEffectDispatcher
from app.core.events import RedisGraphEventPublisher
from app.core.logging import configure_logging
from app.core.notifications import RedisInviteNotifier
from app.core.redis import close_redis
from app.services.membership import MembershipService
from app.services.social_graph import SocialGraphService
from app.stores.capsules import SqlCapsuleStore
from app.stores.membership import SqlMembershipRecordStore
from app.stores.social import SqlSocialGraphStore
from app.tasks.knowledge_refresh import ArqKnowledgeRefreshQueue

log = structlog.get_logger()

_dispatcher: Optional[SideEffectDispatcher] = None


def get_dispatcher() -> SideEffectDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = SideEffectDispatcher(max_queue_size=get_settings().side_effect_queue_size)
    return _dispatcher


@dataclass
class Services:
    membership: MembershipService
    social_graph: SocialGraphService


def build_services(
    session: AsyncSession,
    *,
    dispatcher: Optional[SideEffectDispatcher] = None,
) -> Services:
    settings = get_settings()
    dispatcher = dispatcher or get_dispatcher()
    membership = MembershipService(
        SqlCapsuleStore(session),
        SqlMembershipRecordStore(session),
        dispatcher=dispatcher,
        notifier=RedisInviteNotifier(),
        knowledge=ArqKnowledgeRefreshQueue(),
        media_origin=settings.media_origin,
        message_limit=settings.request_message_max_length,
    )
    social_graph = SocialGraphService(
        SqlSocialGraphStore(session),
        dispatcher=dispatcher,
        publisher=RedisGraphEventPublisher(),
        message_limit=settings.request_message_max_length,
    )
    return Services(membership=membership, social_graph=social_graph)


@asynccontextmanager
async def open_services() -> AsyncIterator[Services]:
    """Services bound to a fresh session for one unit of work."""
    async with get_session_context() as session:
        yield build_services(session)


async def on_startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    log.info("Capsule engine starting", log_format=settings.log_format)


async def on_shutdown() -> None:
    global _dispatcher
    log.info("Capsule engine shutting down")
    if _dispatcher is not None:
        await _dispatcher.stop()
        _dispatcher = None
    await close_redis()
    await dispose_engine()
