"""Query service answering paginated reads from the comments store."""

from __future__ import annotations

from scraper.models.domain import CommentsPayload
from scraper.services.refresh import BackgroundRefresher, RefreshCoordinator
from scraper.services.store import CommentsStore
from scraper.utils.logging import get_logger

logger = get_logger(__name__)


class NoDataAvailable(Exception):
    """Cache is empty and the blocking refresh could not fill it."""


class CommentsQueryService:
    """Serves slices of the cached payload and decides when to refresh.

    - empty cache: block on a forced refresh before answering
    - stale cache: answer with the stale payload, refresh in the background
    - fresh cache: answer immediately
    """

    DEFAULT_LIMIT = 10

    def __init__(
        self,
        store: CommentsStore,
        coordinator: RefreshCoordinator,
        background: BackgroundRefresher,
    ):
        self.store = store
        self.coordinator = coordinator
        self.background = background

    async def get_page(self, offset: int = 0, limit: int = DEFAULT_LIMIT) -> CommentsPayload:
        if offset < 0 or limit < 0:
            raise ValueError("offset and limit must be non-negative")

        payload = await self.store.read()
        if payload is None:
            logger.info("query.cold_cache")
            try:
                await self.coordinator.refresh(force=True)
            except Exception as exc:
                logger.warning("query.initial_refresh_failed", extra={"error": str(exc)}, exc_info=True)
                raise NoDataAvailable() from exc
            payload = self.store.current
            if payload is None:
                raise NoDataAvailable()
        elif self.store.is_stale(payload):
            logger.info("query.stale_cache", extra={"fetched_at": payload.fetched_at})
            self.background.spawn(reason="stale-read")

        return payload.page(offset, limit)

    async def refresh(self) -> CommentsPayload:
        """Forced refresh. Failures of the cycle propagate to the caller."""
        payload = await self.coordinator.refresh(force=True)
        if payload is None:
            payload = await self.store.read()
        if payload is None:
            raise NoDataAvailable()
        return payload

    async def aclose(self) -> None:
        await self.background.stop()
        await self.store.aclose()
