"""
The single find-latest-then-restore-or-insert procedure for graph edges.

Every edge write (friend requests, friendships, follows, blocks) goes through
ensure_edge, so toggling an edge on and off never grows the table and a
restored edge keeps its original created_at.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import structlog

from app.stores.base import SocialGraphStore
from app.stores.records import EdgeKind, GraphEdge

log = structlog.get_logger()


class EdgeOutcome(str, Enum):
    CREATED = "created"
    RESTORED = "restored"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class EdgeResult:
    edge: GraphEdge
    outcome: EdgeOutcome

    @property
    def changed(self) -> bool:
        return self.outcome != EdgeOutcome.UNCHANGED


async def ensure_edge(
    store: SocialGraphStore,
    kind: EdgeKind,
    source_id: str,
    target_id: str,
    *,
    values: Optional[dict[str, Any]] = None,
    restore_values: Optional[dict[str, Any]] = None,
) -> EdgeResult:
    """Make the (source, target) edge live.

    values are written on insert; restore_values (defaulting to values) are
    written when a tombstoned or closed row is brought back. A live row is
    returned untouched.
    """
    values = dict(values or {})
    restore_values = values if restore_values is None else dict(restore_values)

    latest = await store.find_latest_edge(kind, source_id, target_id)
    if latest is None:
        inserted = await store.insert_edge(kind, source_id, target_id, values)
        if inserted.is_live:
            return EdgeResult(inserted, EdgeOutcome.CREATED)
        # Lost the insert race to a tombstoned row; restore it instead
        latest = inserted

    if latest.is_live:
        return EdgeResult(latest, EdgeOutcome.UNCHANGED)

    restored = await store.restore_edge(kind, latest.id, restore_values)
    if restored is None:
        # Row vanished between read and write; fall back to a fresh insert
        inserted = await store.insert_edge(kind, source_id, target_id, values)
        return EdgeResult(inserted, EdgeOutcome.CREATED)

    log.debug("graph.edge_restored", kind=kind.value, source_id=source_id, target_id=target_id)
    return EdgeResult(restored, EdgeOutcome.RESTORED)
