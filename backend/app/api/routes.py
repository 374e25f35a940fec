from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Annotated, TypeVar

from fastapi import APIRouter, Depends, Path, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.dependencies import get_invidious_service
from backend.app.models.music_contracts import (
    InstanceStatus,
    SearchRequest,
    SearchResponse,
    StreamNotFoundResponse,
    StreamResponse,
    Track,
)
from backend.app.services.invidious_service import DispatchCancelledError, InvidiousService

LOGGER = logging.getLogger("music_stream.api")

# nginx convention for a request abandoned by the client.
CLIENT_CLOSED_REQUEST_STATUS = 499
DISCONNECT_POLL_SECONDS = 0.25

router = APIRouter(prefix="/api/music", tags=["music"])

InvidiousServiceDep = Annotated[InvidiousService, Depends(get_invidious_service)]

T = TypeVar("T")


async def run_until_disconnected(
    request: Request,
    call: Callable[[threading.Event], T],
) -> T:
    """
    Run a blocking dispatch on a worker thread and cancel it if the client goes away.

    The dispatch observes the event between attempts and raises
    `DispatchCancelledError`, which propagates to the caller.
    """
    cancel_event = threading.Event()
    work = asyncio.ensure_future(asyncio.to_thread(call, cancel_event))
    try:
        while True:
            done, _ = await asyncio.wait({work}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                break
            if await request.is_disconnected():
                LOGGER.info("client disconnected; cancelling dispatch path=%s", request.url.path)
                cancel_event.set()
                break
        return await work
    except asyncio.CancelledError:
        cancel_event.set()
        raise


@router.post(
    "/search",
    response_model=SearchResponse,
    responses={
        400: {"description": "Query required"},
        CLIENT_CLOSED_REQUEST_STATUS: {"description": "Client disconnected"},
    },
    operation_id="music_search",
)
async def search_tracks(
    payload: SearchRequest,
    request: Request,
    service: InvidiousServiceDep,
) -> SearchResponse | Response:
    if not payload.query:
        return JSONResponse(status_code=400, content={"error": "Query required"})

    context_tokens = bind_contextvars(music_operation="search")
    try:
        results = await run_until_disconnected(
            request,
            lambda cancel_event: service.search(
                payload.query,
                payload.max_results,
                cancel_event=cancel_event,
            ),
        )
    except DispatchCancelledError:
        return Response(status_code=CLIENT_CLOSED_REQUEST_STATUS)
    finally:
        reset_contextvars(**context_tokens)

    tracks = [Track.from_result(result) for result in results]
    return SearchResponse(
        tracks=tracks,
        success=bool(tracks),
        error_message=None if tracks else "No results found",
    )


@router.get(
    "/stream/{video_id}",
    response_model=StreamResponse,
    responses={
        404: {"model": StreamNotFoundResponse},
        CLIENT_CLOSED_REQUEST_STATUS: {"description": "Client disconnected"},
    },
    operation_id="music_stream_url",
)
async def get_stream_url(
    video_id: Annotated[str, Path(min_length=1)],
    request: Request,
    service: InvidiousServiceDep,
) -> StreamResponse | Response:
    context_tokens = bind_contextvars(music_operation="stream", video_id=video_id)
    try:
        result = await run_until_disconnected(
            request,
            lambda cancel_event: service.resolve_stream(video_id, cancel_event=cancel_event),
        )
    except DispatchCancelledError:
        return Response(status_code=CLIENT_CLOSED_REQUEST_STATUS)
    finally:
        reset_contextvars(**context_tokens)

    if result is None:
        return JSONResponse(
            status_code=404,
            content=StreamNotFoundResponse().model_dump(),
        )
    return StreamResponse(stream_url=result.stream_url)


@router.get(
    "/instances",
    response_model=list[InstanceStatus],
    operation_id="music_instances",
)
def list_instances(service: InvidiousServiceDep) -> list[InstanceStatus]:
    return [InstanceStatus.from_snapshot(snapshot) for snapshot in service.instance_snapshots()]
