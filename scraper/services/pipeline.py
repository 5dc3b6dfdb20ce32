"""Fetch + normalize capability used by the refresh coordinator."""

from __future__ import annotations

from typing import Callable, Optional, Protocol

from scraper.connectors.zhihu import ZhihuFeedConnector
from scraper.models.domain import CommentsPayload, RawFeedPage
from scraper.settings import EffectiveConfig
from scraper.services.normalizer import normalize


class FeedPipeline(Protocol):
    async def fetch_all(self) -> RawFeedPage: ...  # noqa: D401
    def normalize(self, page: RawFeedPage) -> CommentsPayload: ...  # noqa: D401


# Connector factory is pluggable for tests; it must return an object with async .fetch_all().
ConnectorFactory = Callable[[EffectiveConfig], ZhihuFeedConnector]


class ZhihuPipeline:
    """Default pipeline: Zhihu connector feeding the normalizer."""

    def __init__(self, config: EffectiveConfig, connector_factory: Optional[ConnectorFactory] = None):
        self.config = config
        self._connector_factory = connector_factory or ZhihuFeedConnector

    async def fetch_all(self) -> RawFeedPage:
        connector = self._connector_factory(self.config)
        return await connector.fetch_all()

    def normalize(self, page: RawFeedPage) -> CommentsPayload:
        return normalize(page, self.config)
