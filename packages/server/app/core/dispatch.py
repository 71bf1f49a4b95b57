"""
Background dispatch for fire-and-forget side effects.

Services submit notify/publish/refresh jobs after their authoritative write
has committed. A single worker task drains the queue; a failing or slow job
is logged and never reaches the caller that submitted it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import structlog

log = structlog.get_logger()

JobFactory = Callable[[], Awaitable[Any]]


@dataclass
class SideEffect:
    name: str
    factory: JobFactory
    context: dict[str, Any] = field(default_factory=dict)


class SideEffectDispatcher:
    """Bounded queue plus one worker task per event loop."""

    def __init__(self, max_queue_size: int = 1000) -> None:
        self._max_queue_size = max_queue_size
        self._queue: asyncio.Queue[SideEffect] | None = None
        self._worker: asyncio.Task | None = None
        self.submitted = 0
        self.dropped = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def _ensure_worker(self) -> asyncio.Queue[SideEffect]:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._max_queue_size)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name="side-effect-dispatcher"
            )
        return self._queue

    def submit(self, name: str, factory: JobFactory, **context: Any) -> bool:
        """Queue a side effect. Returns False if it was dropped."""
        queue = self._ensure_worker()
        try:
            queue.put_nowait(SideEffect(name=name, factory=factory, context=context))
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning("side_effect.dropped", job=name, reason="queue_full", **context)
            return False
        self.submitted += 1
        return True

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            effect = await self._queue.get()
            try:
                await effect.factory()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                log.warning("side_effect.failed", job=effect.name, exc_info=True, **effect.context)
            else:
                log.debug("side_effect.completed", job=effect.name, **effect.context)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued side effect has run."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Drain outstanding work, then stop the worker."""
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        self._queue = None
