"""
ARQ background task: refresh a capsule's derived knowledge after its
membership changes.

Jobs are keyed per capsule so a burst of membership changes collapses into a
single queued refresh. Results are not kept, so the key only dedupes while
a job is waiting and the next change after a run enqueues again.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog
from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.redis import get_arq_pool

log = structlog.get_logger()

STALE_KEY_PREFIX = "capsules:knowledge:stale:"


def refresh_job_id(capsule_id: str) -> str:
    return f"knowledge-refresh:{capsule_id}"


async def refresh_capsule_knowledge(ctx: dict, capsule_id: str, capsule_name: Optional[str] = None) -> bool:
    """Mark the capsule's derived knowledge stale so the indexer rebuilds it.

    Returns True once the marker is written.
    """
    redis = ctx["redis"]
    settings = get_settings()
    await redis.set(
        f"{STALE_KEY_PREFIX}{capsule_id}",
        datetime.now(timezone.utc).isoformat(),
        ex=settings.knowledge_stale_ttl_seconds,
    )
    log.info("knowledge_refresh.marked_stale", capsule_id=capsule_id, capsule_name=capsule_name)
    return True


class ArqKnowledgeRefreshQueue:
    """Enqueues refresh_capsule_knowledge on the ARQ queue."""

    async def enqueue_knowledge_refresh(self, capsule_id: str, name: Optional[str]) -> None:
        pool = await get_arq_pool()
        job = await pool.enqueue_job(
            "refresh_capsule_knowledge",
            capsule_id,
            name,
            _job_id=refresh_job_id(capsule_id),
        )
        if job is None:
            log.debug("knowledge_refresh.already_queued", capsule_id=capsule_id)
        else:
            log.info("knowledge_refresh.enqueued", capsule_id=capsule_id)


# ARQ worker settings
class WorkerSettings:
    """ARQ worker configuration."""

    functions = [refresh_capsule_knowledge]
    queue_name = get_settings().knowledge_queue_name
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = 10
    # a stored result would hold the job id and refuse later refreshes
    keep_result = 0
