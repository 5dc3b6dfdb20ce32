"""Configuration for the Zhihu answers scraper.

Values are resolved in three layers: built-in defaults, environment
variables (``Settings``), and the operator's JSON config file. Extra request
headers come from ``ZHIHU_HEADER_*`` variables and the headers file.
"""

from __future__ import annotations

import json
import math
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional
from urllib.parse import urlencode

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from scraper.utils.logging import get_logger

logger = get_logger(__name__)

Endpoint = Literal["feeds", "answers"]

SITE_URL = "https://www.zhihu.com"
DEFAULT_QUESTION_ID = "800718032"
DEFAULT_QUESTION_TITLE = "你最近在读的书是哪一本？"
CUSTOM_HEADER_ENV_PREFIX = "ZHIHU_HEADER_"

FEEDS_INCLUDE = (
    "data[*].is_normal,admin_closed_comment,reward_info,is_collapsed,annotation_action,"
    "annotation_detail,collapse_reason,is_sticky,collapsed_by,suggest_edit,comment_count,"
    "can_comment,content,editable_content,attachment,voteup_count,reshipment_settings,"
    "comment_permission,created_time,updated_time,review_info,relevant_info,question,excerpt,"
    "is_labeled,paid_info,paid_info_content,reaction_instruction,segment_infos,"
    "allow_segment_interaction,relationship.is_authorized,is_author,voting,is_thanked,"
    "is_nothelp;data[*].author.follower_count,vip_info,kvip_info,badge[*].topics;"
    "data[*].settings.table_of_content.enabled"
)
ANSWERS_INCLUDE = (
    "data[*].is_normal,content,comment_count,voteup_count,created_time,updated_time,"
    "question,excerpt,author"
)

BASE_HEADERS = {
    "user-agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "accept": "application/json, text/plain, */*",
}

# camelCase keys accepted in the JSON config file -> EffectiveConfig fields
CONFIG_FILE_KEYS = {
    "questionId": "question_id",
    "endpoint": "endpoint",
    "include": "include_fields",
    "sortBy": "sort_by",
    "pageSize": "page_size",
    "maxPages": "max_pages",
    "pageDelayMs": "page_delay_ms",
    "refreshIntervalMs": "refresh_interval_ms",
}


class Settings(BaseSettings):
    """Environment-driven settings for the scraper and the API process."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    question_id: str = Field(DEFAULT_QUESTION_ID, alias="ZHIHU_QUESTION_ID", description="Zhihu question id.")
    question_title: str = Field(
        DEFAULT_QUESTION_TITLE,
        alias="ZHIHU_QUESTION_TITLE",
        description="Title used when the feed carries no question metadata.",
    )
    endpoint: str = Field("feeds", alias="ZHIHU_ENDPOINT", description="feeds or answers.")
    include_fields: Optional[str] = Field(None, alias="ZHIHU_INCLUDE", description="include= query value.")
    sort_by: str = Field("created", alias="ZHIHU_SORT_BY", description="sort_by for the answers endpoint.")
    page_size: PositiveInt = Field(10, alias="ZHIHU_PAGE_SIZE", description="Items per upstream page.")
    max_pages: Optional[PositiveInt] = Field(None, alias="ZHIHU_MAX_PAGES", description="Page cap, unset = unbounded.")
    page_delay_ms: NonNegativeInt = Field(1500, alias="ZHIHU_PAGE_DELAY_MS", description="Delay between pages.")
    refresh_interval_ms: PositiveInt = Field(
        15 * 60 * 1000,
        alias="ZHIHU_REFRESH_INTERVAL_MS",
        description="Cache freshness window and periodic refresh interval.",
    )
    request_timeout_seconds: Optional[PositiveFloat] = Field(
        10.0,
        alias="ZHIHU_REQUEST_TIMEOUT_SECONDS",
        description="Upstream HTTP timeout in seconds.",
    )
    config_file: str = Field("data/zhihu-config.json", alias="ZHIHU_CONFIG_FILE")
    headers_file: str = Field("data/zhihu-headers.json", alias="ZHIHU_HEADERS_FILE")
    cache_backend: Literal["file", "redis"] = Field("file", alias="ZHIHU_CACHE_BACKEND")
    cache_file: str = Field("data/zhihu-comments.json", alias="ZHIHU_CACHE_FILE")
    redis_url: str = Field("redis://localhost:6379/0", alias="ZHIHU_REDIS_URL")
    refresh_on_startup: bool = Field(True, alias="ZHIHU_REFRESH_ON_STARTUP")
    cors_allow_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"],
        alias="CORS_ALLOW_ORIGINS",
    )
    structlog_level: str = Field("INFO", alias="STRUCTLOG_LEVEL", description="Log level.")
    log_json: bool = Field(False, alias="LOG_JSON", description="Emit JSON log lines.")

    @field_validator("question_id")
    @classmethod
    def _non_empty_question(cls, value: str) -> str:
        question_id = value.strip()
        if not question_id:
            raise ValueError("ZHIHU_QUESTION_ID must not be blank.")
        return question_id

    @field_validator("max_pages", "include_fields", "request_timeout_seconds", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class EffectiveConfig(BaseModel):
    """Fully resolved scraper configuration. Immutable after resolution."""

    model_config = ConfigDict(frozen=True)

    question_id: str
    question_title: str = DEFAULT_QUESTION_TITLE
    endpoint: Endpoint = "feeds"
    include_fields: str = FEEDS_INCLUDE
    sort_by: str = "created"
    page_size: PositiveInt = 10
    max_pages: Optional[PositiveInt] = None
    page_delay_ms: NonNegativeInt = 1500
    refresh_interval_ms: PositiveInt = 15 * 60 * 1000
    extra_headers: Dict[str, str] = Field(default_factory=dict)
    request_timeout_seconds: Optional[PositiveFloat] = 10.0

    @field_validator("extra_headers")
    @classmethod
    def _lowercase_headers(cls, value: Dict[str, str]) -> Dict[str, str]:
        return {key.lower(): val for key, val in value.items()}

    @property
    def api_url(self) -> str:
        return f"{SITE_URL}/api/v4/questions/{self.question_id}/{self.endpoint}"

    @property
    def question_url(self) -> str:
        return f"{SITE_URL}/question/{self.question_id}"

    @property
    def cache_ttl_seconds(self) -> int:
        return max(1, round(self.refresh_interval_ms / 1000)) * 2

    def first_page_url(self) -> str:
        params = {
            "include": self.include_fields,
            "limit": str(self.page_size),
            "offset": "0",
            "platform": "desktop",
        }
        if self.endpoint == "answers":
            params["sort_by"] = self.sort_by
        return f"{self.api_url}?{urlencode(params)}"

    def request_headers(self) -> Dict[str, str]:
        headers = dict(BASE_HEADERS)
        headers["referer"] = self.question_url
        headers.update(self.extra_headers)
        return headers


def _load_json_object(path: Path, label: str) -> Dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        logger.warning("config.file_unreadable", extra={"file": str(path), "kind": label, "error": str(exc)})
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("config.file_invalid", extra={"file": str(path), "kind": label, "error": str(exc)})
        return {}
    if not isinstance(parsed, dict):
        logger.warning("config.file_invalid", extra={"file": str(path), "kind": label, "error": "not a JSON object"})
        return {}
    return parsed


def load_config_file(path: str | Path) -> Dict[str, Any]:
    """Read the JSON config overrides. Missing file is an empty override set."""
    config = _load_json_object(Path(path), "config")
    if config:
        logger.info("config.file_loaded", extra={"file": str(path), "keys": ", ".join(config)})
    return config


def load_headers_file(path: str | Path) -> Dict[str, str]:
    headers = _load_json_object(Path(path), "headers")
    if headers:
        logger.info("config.headers_loaded", extra={"file": str(path), "count": len(headers)})
    return {str(key): str(value) for key, value in headers.items() if value}


def collect_env_headers(environ: Mapping[str, str]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for key, value in environ.items():
        if not key.startswith(CUSTOM_HEADER_ENV_PREFIX) or not value:
            continue
        name = key[len(CUSTOM_HEADER_ENV_PREFIX):].lower().replace("_", "-")
        if name:
            headers[name] = value
    return headers


def _file_int(overrides: Mapping[str, Any], key: str, fallback: Any, *, allow_zero: bool = False) -> Any:
    if key not in overrides or overrides[key] is None:
        return fallback
    value = overrides[key]
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = math.nan
    valid = math.isfinite(number) and (number >= 0 if allow_zero else number > 0)
    if isinstance(value, bool) or not valid:
        logger.warning("config.value_ignored", extra={"key": key, "value": value})
        return fallback
    return int(number)


def resolve_config(settings: Optional[Settings] = None, *, environ: Optional[Mapping[str, str]] = None) -> EffectiveConfig:
    """Merge defaults, environment and the config/headers files."""
    cfg = settings or get_settings()
    env = os.environ if environ is None else environ
    overrides = {CONFIG_FILE_KEYS[k]: v for k, v in load_config_file(cfg.config_file).items() if k in CONFIG_FILE_KEYS}

    question_id = str(overrides.get("question_id") or cfg.question_id).strip()
    endpoint_setting = str(overrides.get("endpoint") or cfg.endpoint)
    endpoint: Endpoint = "answers" if endpoint_setting.strip().lower() == "answers" else "feeds"
    default_include = ANSWERS_INCLUDE if endpoint == "answers" else FEEDS_INCLUDE
    include_fields = overrides.get("include_fields") if isinstance(overrides.get("include_fields"), str) else None
    sort_by = overrides.get("sort_by") if isinstance(overrides.get("sort_by"), str) else None

    headers = collect_env_headers(env)
    headers.update({key.lower(): value for key, value in load_headers_file(cfg.headers_file).items()})

    config = EffectiveConfig(
        question_id=question_id,
        question_title=cfg.question_title,
        endpoint=endpoint,
        include_fields=include_fields or cfg.include_fields or default_include,
        sort_by=sort_by or cfg.sort_by,
        page_size=_file_int(overrides, "page_size", cfg.page_size),
        max_pages=_file_int(overrides, "max_pages", cfg.max_pages),
        page_delay_ms=_file_int(overrides, "page_delay_ms", cfg.page_delay_ms, allow_zero=True),
        refresh_interval_ms=_file_int(overrides, "refresh_interval_ms", cfg.refresh_interval_ms),
        extra_headers=headers,
        request_timeout_seconds=cfg.request_timeout_seconds,
    )
    logger.info(
        "config.resolved",
        extra={
            "question_id": config.question_id,
            "endpoint": config.endpoint,
            "sort_by": config.sort_by,
            "page_size": config.page_size,
            "max_pages": config.max_pages if config.max_pages is not None else "unbounded",
            "page_delay_ms": config.page_delay_ms,
            "custom_headers": ", ".join(sorted(headers)),
        },
    )
    return config


@lru_cache()
def get_settings() -> Settings:
    """Return the process-wide Settings built from the environment."""
    try:
        return Settings()
    except ValidationError as exc:
        raise RuntimeError(f"Environment validation failed: {exc}") from exc


@lru_cache()
def get_effective_config() -> EffectiveConfig:
    return resolve_config(get_settings())


def reset_settings_cache() -> None:
    """Clear cached Settings and EffectiveConfig (tests)."""
    get_settings.cache_clear()  # type: ignore[attr-defined]
    get_effective_config.cache_clear()  # type: ignore[attr-defined]
