from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from scraper.utils.logging import get_logger

from .models import (
    COMMENTS_CACHE_CONTROL,
    NO_DATA_MESSAGE,
    REFRESH_FAILED_MESSAGE,
    CommentsPayload,
    ErrorBody,
    RefreshResult,
)
from .service import CommentsQueryService, NoDataAvailable

logger = get_logger(__name__)

router = APIRouter(prefix="/api/zhihu")


def get_query_service(request: Request) -> CommentsQueryService:
    return request.app.state.query_service


ServiceDep = Annotated[CommentsQueryService, Depends(get_query_service)]


@router.get(
    "/comments",
    response_model=CommentsPayload,
    responses={503: {"model": ErrorBody}},
)
async def list_comments_route(
    service: ServiceDep,
    response: Response,
    offset: int = Query(0, ge=0),
    limit: int = Query(CommentsQueryService.DEFAULT_LIMIT, ge=0),
):
    try:
        payload = await service.get_page(offset, limit)
    except NoDataAvailable:
        return JSONResponse(status_code=503, content={"error": NO_DATA_MESSAGE})
    response.headers["Cache-Control"] = COMMENTS_CACHE_CONTROL
    return payload


@router.post(
    "/refresh",
    response_model=RefreshResult,
    responses={502: {"model": ErrorBody}},
)
async def refresh_route(service: ServiceDep):
    try:
        payload = await service.refresh()
    except Exception as exc:
        logger.error("refresh.manual_failed", extra={"error": str(exc)}, exc_info=True)
        return JSONResponse(status_code=502, content={"error": REFRESH_FAILED_MESSAGE})
    return RefreshResult(refreshed_at=payload.fetched_at, total=payload.total)
