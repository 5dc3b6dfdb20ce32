"""Single-flight refresh and supervised background scheduling."""

from __future__ import annotations

import asyncio
import uuid
from typing import Optional, Set

from scraper.models.domain import CommentsPayload
from scraper.services.pipeline import FeedPipeline
from scraper.services.store import CommentsStore
from scraper.utils.logging import get_logger

logger = get_logger(__name__)


class RefreshCoordinator:
    """Runs at most one fetch-normalize-write cycle at a time.

    States are ``idle`` and ``refreshing``. Requests arriving while a cycle
    runs join it instead of starting another one. Check-and-set of the
    in-flight task happens without an intervening ``await``.
    """

    def __init__(self, pipeline: FeedPipeline, store: CommentsStore):
        self.pipeline = pipeline
        self.store = store
        self._inflight: Optional[asyncio.Task[CommentsPayload]] = None

    @property
    def is_refreshing(self) -> bool:
        return self._inflight is not None

    @property
    def state(self) -> str:
        return "refreshing" if self._inflight is not None else "idle"

    async def refresh(self, *, force: bool = False) -> Optional[CommentsPayload]:
        """Refresh the store. Returns None when an opportunistic call found fresh data."""
        if self._inflight is not None:
            logger.info("refresh.join", extra={"force": force})
            return await asyncio.shield(self._inflight)

        if not force:
            await self.store.read()
            if self._inflight is not None:
                return await asyncio.shield(self._inflight)
            if not self.store.is_stale():
                logger.info("refresh.skipped", extra={"reason": "fresh"})
                return None

        trace_id = uuid.uuid4().hex
        logger.info("refresh.start", extra={"trace_id": trace_id, "force": force})
        task = asyncio.get_running_loop().create_task(self._run(trace_id))
        self._inflight = task
        task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    async def aclose(self) -> None:
        """Cancel the in-flight cycle, if any, and wait for it to unwind."""
        task = self._inflight
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self._inflight is task:
            self._inflight = None
        logger.info("refresh.cancelled")

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Mark the exception as retrieved; joined callers already re-raise it.
            task.exception()

    async def _run(self, trace_id: str) -> CommentsPayload:
        try:
            page = await self.pipeline.fetch_all()
            payload = self.pipeline.normalize(page)
        except Exception:
            logger.warning("refresh.failed", extra={"trace_id": trace_id}, exc_info=True)
            raise
        persisted = await self.store.write(payload)
        logger.info(
            "refresh.done",
            extra={"trace_id": trace_id, "comments": payload.total, "persisted": persisted},
        )
        return self.store.current or payload


class BackgroundRefresher:
    """Supervises fire-and-forget refreshes and the periodic refresh loop.

    Every spawned task has its own error boundary: failures are logged and
    never reach the request that triggered them. All tasks are plain asyncio
    tasks, so they never keep the process alive, and ``stop()`` cancels them
    together with any refresh cycle still in flight.
    """

    def __init__(self, coordinator: RefreshCoordinator, *, interval_seconds: float):
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self._tasks: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, *, reason: str = "stale") -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._guarded_refresh(reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded_refresh(self, reason: str) -> None:
        try:
            await self.coordinator.refresh()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("refresh.background_failed", extra={"reason": reason}, exc_info=True)

    def start(self, *, run_immediately: bool = True) -> None:
        if self.running:
            return
        self._loop_task = asyncio.get_running_loop().create_task(self._periodic(run_immediately))
        logger.info("refresh.scheduled", extra={"interval_seconds": self.interval_seconds})

    async def _periodic(self, run_immediately: bool) -> None:
        if not run_immediately:
            await asyncio.sleep(self.interval_seconds)
        while True:
            await self._guarded_refresh("periodic")
            await asyncio.sleep(self.interval_seconds)

    async def stop(self) -> None:
        tasks = list(self._tasks)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
            self._loop_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # Waiters are shielded from the cycle; it needs its own cancel.
        await self.coordinator.aclose()
        logger.info("refresh.stopped", extra={"cancelled": len(tasks)})
