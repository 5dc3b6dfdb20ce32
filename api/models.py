from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from scraper.models.domain import CommentsPayload  # noqa: F401

NO_DATA_MESSAGE = "暂时没有缓存的知乎数据，请稍后再试。"
REFRESH_FAILED_MESSAGE = "刷新知乎数据失败，请稍后重试。"

COMMENTS_CACHE_CONTROL = "public, max-age=120"


class RefreshResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ok: bool = True
    refreshed_at: str
    total: int


class ErrorBody(BaseModel):
    error: str
