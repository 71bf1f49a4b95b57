"""Redis and ARQ connection management."""

from __future__ import annotations

import redis.asyncio as redis
from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from app.core.config import get_settings

_redis_pool: redis.Redis | None = None
_arq_pool: ArqRedis | None = None


async def get_redis() -> redis.Redis:
    """Get or create the Redis connection used for pub/sub and notifications."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = redis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_pool


async def get_arq_pool() -> ArqRedis:
    """Get or create the ARQ pool used to enqueue background jobs."""
    global _arq_pool
    if _arq_pool is None:
        settings = get_settings()
        _arq_pool = await create_pool(
            RedisSettings.from_dsn(settings.redis_url),
            default_queue_name=settings.knowledge_queue_name,
        )
    return _arq_pool


async def close_redis() -> None:
    """Close both Redis pools."""
    global _redis_pool, _arq_pool
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
    if _arq_pool is not None:
        await _arq_pool.aclose()
        _arq_pool = None
