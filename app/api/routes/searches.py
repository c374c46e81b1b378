from __future__ import annotations

import json as _json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from app.api.deps import get_services
from app.models.schemas import (
    CancelRequest,
    CancelResponse,
    CreateSearchRequest,
    ProgressResponse,
    RetryRequest,
    SearchResponse,
    StartRequest,
    StartResponse,
)
from app.models.errors import SearchNotFoundError
from app.services import intake
from app.services import logger as log_service
from app.services.container import Services

router = APIRouter(prefix="/api/searches", tags=["searches"])


@router.post("", response_model=SearchResponse, status_code=201)
async def create_search(request: CreateSearchRequest, services: Services = Depends(get_services)):
    search = await intake.create_search(
        services.store,
        user_id=request.user_id,
        orientation=request.orientation,
        product_service=request.product_service,
        industries=request.industries,
        countries=request.countries,
    )
    if request.start:
        await services.orchestrator.start_orchestration(search.id, search.user_id)
    return search.to_dict()


@router.get("/{search_id}", response_model=SearchResponse)
async def get_search(search_id: str, services: Services = Depends(get_services)):
    search = await services.store.get_search(search_id)
    if search is None:
        raise SearchNotFoundError(search_id)
    return search.to_dict()


@router.post("/{search_id}/start", response_model=StartResponse)
async def start_search(search_id: str, request: StartRequest, services: Services = Depends(get_services)):
    """Accept the run (202) or, in foreground mode, return the final state (200)."""
    result = await services.orchestrator.start_orchestration(
        search_id, request.user_id, foreground=request.foreground
    )
    status_code = 200 if request.foreground or result.duplicate else 202
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.post("/{search_id}/cancel", response_model=CancelResponse)
async def cancel_search(
    search_id: str,
    request: CancelRequest | None = None,
    services: Services = Depends(get_services),
):
    result = await services.cancellation.cancel(search_id, user_id=request.user_id if request else None)
    return {
        "ok": True,
        "cancelled": result.cancelled,
        "jobs_failed": result.jobs_failed,
        "tasks_failed": result.tasks_failed,
        "search": result.search.to_dict(),
    }


@router.api_route("/{search_id}/progress", methods=["GET", "POST"], response_model=ProgressResponse)
async def get_progress(search_id: str, services: Services = Depends(get_services)):
    snapshot = await services.progress.get_progress(search_id)
    return snapshot.to_dict()


@router.get("/{search_id}/stream")
async def stream_progress(search_id: str, http_request: Request, services: Services = Depends(get_services)):
    """SSE stream: a snapshot first, then live events until the search ends."""
    # Fail fast with 404 rather than opening a stream for an unknown search.
    await services.progress.get_progress(search_id)

    async def event_generator():
        log_service.log_event("stream_opened", "progress stream opened", search_id=search_id)
        async for event in services.progress.subscribe(search_id):
            if await http_request.is_disconnected():
                break
            yield {
                "event": event.event.value,
                "data": _json.dumps(event.payload(), default=str),
            }

    return EventSourceResponse(event_generator())


@router.post("/{search_id}/retry", response_model=StartResponse)
async def retry_search(search_id: str, request: RetryRequest, services: Services = Depends(get_services)):
    result = await services.orchestrator.retry(
        search_id,
        user_id=request.user_id,
        from_phase=request.from_phase,
        foreground=request.foreground,
    )
    status_code = 200 if request.foreground or result.duplicate else 202
    return JSONResponse(status_code=status_code, content=result.to_dict())
