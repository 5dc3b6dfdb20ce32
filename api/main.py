from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from dotenv import load_dotenv

# ZHIHU_HEADER_* overrides are read from os.environ, so .env must land there too
project_root = Path(__file__).parent.parent
env_path = project_root / ".env"
if env_path.exists():
    load_dotenv(env_path)

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from scraper.services.pipeline import ZhihuPipeline
from scraper.services.refresh import BackgroundRefresher, RefreshCoordinator
from scraper.services.store import CommentsStore, FilePayloadBackend, PayloadBackend, RedisPayloadBackend
from scraper.settings import EffectiveConfig, Settings, get_settings, resolve_config
from scraper.utils.logging import configure_logging, get_logger

from .routes import router
from .service import CommentsQueryService

logger = get_logger(__name__)


def build_backend(settings: Settings, config: EffectiveConfig) -> PayloadBackend:
    if settings.cache_backend == "redis":
        logger.info("store.backend", extra={"backend": "redis", "redis_url": settings.redis_url})
        return RedisPayloadBackend.from_url(settings.redis_url, question_id=config.question_id)
    logger.info("store.backend", extra={"backend": "file", "path": settings.cache_file})
    return FilePayloadBackend(settings.cache_file)


def build_query_service(settings: Settings, config: Optional[EffectiveConfig] = None) -> CommentsQueryService:
    """Wire store, pipeline, coordinator and background refresher for one question."""
    config = config or resolve_config(settings)
    store = CommentsStore(
        build_backend(settings, config),
        refresh_interval_ms=config.refresh_interval_ms,
        ttl_seconds=config.cache_ttl_seconds,
    )
    coordinator = RefreshCoordinator(ZhihuPipeline(config), store)
    background = BackgroundRefresher(coordinator, interval_seconds=config.refresh_interval_ms / 1000)
    return CommentsQueryService(store, coordinator, background)


def create_app(
    settings: Optional[Settings] = None,
    *,
    query_service: Optional[CommentsQueryService] = None,
) -> FastAPI:
    config = settings or get_settings()
    configure_logging(config.structlog_level, json_enabled=config.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.query_service is None:
            app.state.query_service = build_query_service(config)
        service: CommentsQueryService = app.state.query_service
        service.background.start(run_immediately=config.refresh_on_startup)
        try:
            yield
        finally:
            await service.aclose()

    app = FastAPI(title="Zhihu Answers Feed API", version="0.1.0", lifespan=lifespan)
    app.state.query_service = query_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_allow_origins),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def _unknown_route(request: Request, exc: StarletteHTTPException):
        # Only the two API routes exist; wrong methods read as unknown routes.
        if exc.status_code == 405:
            return JSONResponse(status_code=404, content={"detail": "Not Found"})
        return await http_exception_handler(request, exc)

    app.include_router(router)

    @app.get("/healthz", tags=["system"])
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
