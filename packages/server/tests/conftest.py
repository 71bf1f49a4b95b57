"""Shared fixtures: in-memory stores wired into real services."""

from __future__ import annotations

import uuid

import pytest

from app.core.dispatch import SideEffectDispatcher
from app.services.membership import MembershipService
from app.services.social_graph import SocialGraphService
from fakes import (
    InMemoryCapsuleStore,
    InMemoryMembershipStore,
    InMemorySocialGraphStore,
    RecordingKnowledgeQueue,
    RecordingNotifier,
    RecordingPublisher,
)


@pytest.fixture
async def dispatcher():
    dispatcher = SideEffectDispatcher(max_queue_size=100)
    yield dispatcher
    await dispatcher.stop()


@pytest.fixture
def capsule_store():
    return InMemoryCapsuleStore()


@pytest.fixture
def record_store():
    return InMemoryMembershipStore()


@pytest.fixture
def graph_store():
    return InMemorySocialGraphStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def knowledge():
    return RecordingKnowledgeQueue()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def membership(capsule_store, record_store, dispatcher, notifier, knowledge):
    return MembershipService(
        capsule_store,
        record_store,
        dispatcher=dispatcher,
        notifier=notifier,
        knowledge=knowledge,
        media_origin="https://media.example.com",
    )


@pytest.fixture
def social(graph_store, dispatcher, publisher):
    return SocialGraphService(graph_store, dispatcher=dispatcher, publisher=publisher)


@pytest.fixture
def user_ids():
    """Factory for fresh user ids."""

    def make(count: int = 1):
        ids = [str(uuid.uuid4()) for _ in range(count)]
        return ids[0] if count == 1 else ids

    return make
