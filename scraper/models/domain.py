"""Domain models: raw upstream feed data and the canonical comments payload."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, field_validator
from pydantic.alias_generators import to_camel


def _id_to_str(value: Any) -> Any:
    # Upstream ids are JSON numbers on some endpoints and strings on others.
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return value


class _Upstream(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Paging(_Upstream):
    is_end: Optional[bool] = None
    next: Optional[str] = None
    need_force_login: Optional[bool] = None
    totals: Optional[int] = None


class RawFeedPage(_Upstream):
    """One upstream page, or all pages of a fetch concatenated in order."""

    data: List[Dict[str, Any]] = Field(default_factory=list)
    paging: Optional[Paging] = None


class RawAuthor(_Upstream):
    name: Optional[str] = None
    headline: Optional[str] = None
    avatar_url: Optional[str] = None
    url: Optional[str] = None
    url_token: Optional[str] = None


class RawQuestion(_Upstream):
    id: Optional[str] = None
    title: Optional[str] = None
    url: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _id_to_str(value)


class RawAnswer(_Upstream):
    id: Optional[str] = None
    excerpt: Optional[str] = None
    content: Optional[str] = None
    comment_count: Optional[int] = None
    voteup_count: Optional[int] = None
    thanks_count: Optional[int] = None
    created_time: Optional[int] = None
    url: Optional[str] = None
    author: Optional[RawAuthor] = None
    question: Optional[RawQuestion] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _id_to_str(value)


class _Canonical(BaseModel):
    """Output-facing models serialize with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Author(_Canonical):
    name: str = ""
    headline: str = ""
    avatar_url: str = ""
    profile_url: str = ""


class Question(_Canonical):
    id: str
    title: str
    url: str


class Comment(_Canonical):
    id: str
    author: Author
    excerpt: str = ""
    content_text: str = ""
    voteup_count: NonNegativeInt = 0
    comment_count: NonNegativeInt = 0
    thanks_count: NonNegativeInt = 0
    created_at: NonNegativeInt = 0
    answer_url: str


class CommentsPayload(_Canonical):
    """A complete snapshot of one question's answers.

    ``total`` is the full comment count at build time; paginated responses
    slice ``comments`` but keep ``total`` untouched.
    """

    question: Question
    comments: List[Comment] = Field(default_factory=list)
    fetched_at: str
    total: NonNegativeInt = 0

    def page(self, offset: int = 0, limit: int = 10) -> "CommentsPayload":
        return self.model_copy(update={"comments": self.comments[offset:offset + limit]})
