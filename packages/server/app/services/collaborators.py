"""Contracts for the one-way collaborators the services call after a write."""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from capsules_shared.schemas.capsules import MemberRequestView
from capsules_shared.schemas.social import GraphEvent


class InviteNotifier(Protocol):
    async def notify_invite(
        self, request: MemberRequestView, *, capsule_name: Optional[str] = None
    ) -> None: ...


class GraphEventPublisher(Protocol):
    async def publish_graph_events(self, events: Sequence[GraphEvent]) -> None: ...


class KnowledgeRefreshQueue(Protocol):
    async def enqueue_knowledge_refresh(self, capsule_id: str, name: Optional[str]) -> None: ...
