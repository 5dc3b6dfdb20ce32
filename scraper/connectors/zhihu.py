"""Zhihu question feed connector (cursor pagination over the v4 API)."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from scraper.models.domain import Paging, RawFeedPage
from scraper.settings import EffectiveConfig
from scraper.utils.logging import get_logger

from .base import PermanentError, TransientError

SleepFn = Callable[[float], Awaitable[None]]

logger = get_logger(__name__)


class ZhihuFeedConnector:
    """Fetches every page of a question's answer feed.

    - client injected: the caller owns the AsyncClient lifetime
    - no client: a private AsyncClient lives for one fetch_all call
    """

    source = "zhihu"

    def __init__(
        self,
        config: EffectiveConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.config = config
        self._client = client
        self._sleep = sleep

    async def fetch_all(self) -> RawFeedPage:
        if self._client is not None:
            return await self._paginate(self._client)
        timeout = httpx.Timeout(self.config.request_timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await self._paginate(client)

    async def _paginate(self, client: httpx.AsyncClient) -> RawFeedPage:
        cfg = self.config
        headers = cfg.request_headers()
        aggregated = RawFeedPage()
        next_url: Optional[str] = None
        reported_totals = False
        pages = range(cfg.max_pages) if cfg.max_pages is not None else itertools.count()

        for page_index in pages:
            request_url = next_url or cfg.first_page_url()
            logger.info(
                "feed.page.request",
                extra={"page": page_index + 1, "via_cursor": next_url is not None},
            )
            chunk = await self._fetch_page(client, request_url, headers)
            paging = chunk.paging

            if page_index == 0:
                self._log_first_page(chunk, request_url, headers)
            if not reported_totals and paging is not None and paging.totals is not None:
                logger.info("feed.totals", extra={"totals": paging.totals})
                reported_totals = True

            aggregated.data.extend(chunk.data)
            aggregated.paging = paging
            logger.info(
                "feed.page.fetched",
                extra={"page": page_index + 1, "items": len(chunk.data), "accumulated": len(aggregated.data)},
            )

            if paging is None or paging.is_end or not paging.next:
                if paging is not None and paging.need_force_login:
                    logger.warning("feed.login_required", extra={"page": page_index + 1})
                logger.info("feed.end", extra={"pages": page_index + 1})
                break
            if paging.need_force_login:
                # Partial feed is still a usable result.
                logger.warning("feed.login_required", extra={"page": page_index + 1})
                break
            if cfg.max_pages is not None and page_index + 1 >= cfg.max_pages:
                logger.info("feed.page_cap_reached", extra={"max_pages": cfg.max_pages})
                break

            next_url = paging.next
            logger.debug("feed.page.delay", extra={"delay_ms": cfg.page_delay_ms})
            await self._sleep(cfg.page_delay_ms / 1000)

        return aggregated

    async def _fetch_page(self, client: httpx.AsyncClient, url: str, headers: Dict[str, str]) -> RawFeedPage:
        try:
            resp = await client.get(url, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientError("Zhihu API timeout") from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"Zhihu API request failed: {type(exc).__name__}") from exc

        try:
            body: Any = resp.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            message = str(body["error"].get("message") or "unknown error")
            raise PermanentError(f"Zhihu API error: {message}", status_code=resp.status_code)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientError(
                f"Zhihu API error: {resp.status_code} {resp.reason_phrase}", status_code=resp.status_code
            )
        if not resp.is_success:
            raise PermanentError(
                f"Zhihu API error: {resp.status_code} {resp.reason_phrase}", status_code=resp.status_code
            )
        if not isinstance(body, dict):
            raise PermanentError("Zhihu API returned a non-JSON body", status_code=resp.status_code)

        data = body.get("data")
        raw_paging = body.get("paging")
        try:
            paging = Paging.model_validate(raw_paging) if isinstance(raw_paging, dict) else None
        except ValidationError as exc:
            raise PermanentError("Zhihu API returned malformed paging", status_code=resp.status_code) from exc
        return RawFeedPage(
            data=[item for item in data if isinstance(item, dict)] if isinstance(data, list) else [],
            paging=paging,
        )

    def _log_first_page(self, chunk: RawFeedPage, request_url: str, headers: Dict[str, str]) -> None:
        paging = chunk.paging
        if paging is None:
            return
        logger.info(
            "feed.first_page",
            extra={
                "totals": paging.totals if paging.totals is not None else "n/a",
                "is_end": paging.is_end if paging.is_end is not None else "n/a",
                "need_force_login": bool(paging.need_force_login),
                "has_next": bool(paging.next),
                "url": request_url,
                "headers": ", ".join(headers),
            },
        )
        if len(chunk.data) < self.config.page_size:
            logger.warning(
                "feed.short_first_page",
                extra={"items": len(chunk.data), "requested": self.config.page_size},
            )
