"""Comments payload store: in-process copy backed by a file or Redis.

Lifecycle of a ``CommentsStore``:

- init: nothing in memory, backend not consulted yet
- ready: first ``read()`` loaded the backend (or found it empty)
- mutated: every successful refresh replaces the payload through ``write()``

A failed backend save is logged only; the memory copy keeps serving the
newest payload.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from pydantic import ValidationError
from redis.exceptions import RedisError

from scraper.models.domain import CommentsPayload
from scraper.utils.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


def parse_timestamp(value: str) -> Optional[float]:
    """Epoch seconds for an ISO-8601 timestamp, or None when unparsable."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class PayloadBackend(Protocol):
    async def load(self) -> Optional[CommentsPayload]: ...  # noqa: D401
    async def save(self, payload: CommentsPayload, ttl_seconds: int) -> None: ...  # noqa: D401
    async def aclose(self) -> None: ...  # noqa: D401


class InMemoryPayloadBackend:
    """Backend that keeps nothing beyond the process (tests/local runs)."""

    def __init__(self, payload: Optional[CommentsPayload] = None) -> None:
        self.payload = payload
        self.ttl_seconds: Optional[int] = None

    async def load(self) -> Optional[CommentsPayload]:
        return self.payload

    async def save(self, payload: CommentsPayload, ttl_seconds: int) -> None:
        self.payload = payload
        self.ttl_seconds = ttl_seconds

    async def aclose(self) -> None:
        return None


class FilePayloadBackend:
    """JSON file on local disk. The TTL hint does not apply to files."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def load(self) -> Optional[CommentsPayload]:
        return await asyncio.to_thread(self._load_sync)

    async def save(self, payload: CommentsPayload, ttl_seconds: int) -> None:
        await asyncio.to_thread(self._save_sync, payload)

    async def aclose(self) -> None:
        return None

    def _load_sync(self) -> Optional[CommentsPayload]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("store.file.missing", extra={"path": str(self.path)})
            return None
        except OSError as exc:
            logger.error("store.file.unreadable", extra={"path": str(self.path), "error": str(exc)})
            return None
        try:
            return CommentsPayload.model_validate_json(raw)
        except ValidationError as exc:
            logger.error("store.file.corrupt", extra={"path": str(self.path), "errors": exc.error_count()})
            return None

    def _save_sync(self, payload: CommentsPayload) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        body = json.dumps(payload.to_json_dict(), ensure_ascii=False, indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(body)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class _AsyncRedisLikeClient(Protocol):
    async def get(self, name: str) -> Any: ...
    async def set(self, name: str, value: str, *, ex: int | None = None) -> Any: ...


class RedisPayloadBackend:
    """Redis key holding the payload JSON with a native expiry.

    - read: ``GET key`` -> JSON string or None
    - write: ``SET key value EX <ttl>``
    """

    def __init__(self, client: _AsyncRedisLikeClient, *, key: str) -> None:
        self._client = client
        self.key = key

    @classmethod
    def from_url(cls, redis_url: str, *, question_id: str) -> "RedisPayloadBackend":
        from redis import asyncio as aioredis

        client = aioredis.Redis.from_url(redis_url, decode_responses=True)
        return cls(client, key=f"zhihu:comments:{question_id}")

    async def load(self) -> Optional[CommentsPayload]:
        try:
            data = await self._client.get(self.key)
        except RedisError as exc:
            logger.error("store.redis.load_failed", extra={"key": self.key, "error": str(exc)})
            return None
        if not data:
            return None
        try:
            return CommentsPayload.model_validate_json(data)
        except ValidationError as exc:
            logger.error("store.redis.corrupt", extra={"key": self.key, "errors": exc.error_count()})
            return None

    async def save(self, payload: CommentsPayload, ttl_seconds: int) -> None:
        body = json.dumps(payload.to_json_dict(), ensure_ascii=False)
        await self._client.set(self.key, body, ex=ttl_seconds)

    async def aclose(self) -> None:
        close = getattr(self._client, "aclose", None)
        if close is not None:
            await close()


class CommentsStore:
    """Single source of truth for the latest payload within one process."""

    def __init__(
        self,
        backend: PayloadBackend,
        *,
        refresh_interval_ms: int,
        ttl_seconds: Optional[int] = None,
        clock: Clock = time.time,
    ) -> None:
        self.backend = backend
        self.refresh_interval_ms = refresh_interval_ms
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else max(1, round(refresh_interval_ms / 1000)) * 2
        self._clock = clock
        self._payload: Optional[CommentsPayload] = None
        self._loaded = False
        self.last_refreshed_at: float = 0.0

    @property
    def state(self) -> str:
        if not self._loaded and self._payload is None:
            return "init"
        return "ready"

    @property
    def current(self) -> Optional[CommentsPayload]:
        return self._payload

    async def read(self) -> Optional[CommentsPayload]:
        if self._payload is not None:
            logger.debug("store.read.memory")
            return self._payload
        if self._loaded:
            return None
        stored = await self.backend.load()
        self._loaded = True
        if stored is not None and self._payload is None:
            self._payload = stored
            self.last_refreshed_at = parse_timestamp(stored.fetched_at) or 0.0
            logger.info("store.read.backend", extra={"comments": len(stored.comments)})
        return self._payload

    async def write(self, payload: CommentsPayload) -> bool:
        """Replace the payload. Returns False when only the memory copy was updated."""
        previous = self._payload
        if previous is not None:
            before = parse_timestamp(previous.fetched_at)
            after = parse_timestamp(payload.fetched_at)
            if before is not None and (after is None or after < before):
                payload = payload.model_copy(update={"fetched_at": previous.fetched_at})
        self._payload = payload
        self._loaded = True
        self.last_refreshed_at = parse_timestamp(payload.fetched_at) or self._clock()
        try:
            await self.backend.save(payload, self.ttl_seconds)
        except Exception as exc:
            logger.error(
                "store.write_failed",
                extra={"error": str(exc), "backend": type(self.backend).__name__},
                exc_info=True,
            )
            return False
        logger.info("store.written", extra={"comments": len(payload.comments), "ttl_seconds": self.ttl_seconds})
        return True

    async def aclose(self) -> None:
        await self.backend.aclose()

    def is_stale(self, payload: Optional[CommentsPayload] = None) -> bool:
        target = payload if payload is not None else self._payload
        if target is None:
            return True
        fetched = parse_timestamp(target.fetched_at)
        if fetched is None:
            return True
        return (self._clock() - fetched) * 1000 > self.refresh_interval_ms
