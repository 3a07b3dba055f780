"""Calendar connection, sync and meeting endpoints.

All routes act on behalf of the user named by the ``X-User-Id`` header; a
connection owned by someone else is reported as not found.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, Response
from starlette.requests import Request
from starlette.responses import StreamingResponse

from briefings.api.deps import _get_service, get_current_user_id
from briefings.api.models import ApiResponse
from briefings.api.models.calendar import (
    ConnectionResponse,
    ConnectionUpdate,
    MeetingResponse,
    SyncCancelResponse,
    SyncRequest,
    SyncStartResponse,
)
from briefings.service import CalendarSyncService, SyncHandle
from briefings.storage.progress import ProgressRow
from briefings.sync.progress import Subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar/connections", tags=["calendar"])

KEEPALIVE_SECONDS = 30.0

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


async def _progress_stream(
    request: Request, subscription: Subscription
) -> AsyncGenerator[str, None]:
    """Yield SSE frames until the run's terminal event or a client disconnect."""
    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(subscription.get(), timeout=KEEPALIVE_SECONDS)
            except TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield event.to_sse()
            if event.terminal:
                break
    finally:
        subscription.close()


def _sse_response(request: Request, handle: SyncHandle) -> StreamingResponse:
    return StreamingResponse(
        _progress_stream(request, handle.stream()),
        media_type="text/event-stream",
        headers=_SSE_HEADERS | {"X-Sync-Run-Id": handle.run_id},
    )


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


@router.get("", response_model=ApiResponse[list[ConnectionResponse]])
async def list_connections(
    include_inactive: bool = Query(default=True),
    user_id: str = Depends(get_current_user_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[list[ConnectionResponse]]:
    connections = await service.list_connections(user_id, include_inactive=include_inactive)
    return ApiResponse[list[ConnectionResponse]](
        data=[
            ConnectionResponse.from_connection(
                c, sync_running=service.active_sync(c.id) is not None
            )
            for c in connections
        ]
    )


@router.patch("/{connection_id}", response_model=ApiResponse[ConnectionResponse])
async def update_connection(
    connection_id: str,
    body: ConnectionUpdate,
    user_id: str = Depends(get_current_user_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[ConnectionResponse]:
    """Rename and/or pause/resume a connection."""
    connection = await service.get_connection(connection_id, user_id=user_id)
    if body.title is not None:
        connection = await service.rename_connection(connection_id, body.title, user_id=user_id)
    if body.is_active is not None:
        connection = await service.set_connection_active(
            connection_id, body.is_active, user_id=user_id
        )
    return ApiResponse[ConnectionResponse](
        data=ConnectionResponse.from_connection(
            connection, sync_running=service.active_sync(connection_id) is not None
        )
    )


@router.delete("/{connection_id}", status_code=204)
async def delete_connection(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    service: CalendarSyncService = Depends(_get_service),
) -> Response:
    await service.delete_connection(connection_id, user_id=user_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@router.post(
    "/{connection_id}/sync",
    status_code=202,
    responses={
        202: {"model": ApiResponse[SyncStartResponse]},
        200: {"description": "Server-Sent Events progress stream (stream=true)"},
        409: {"description": "A sync is already running for this connection"},
    },
)
async def start_sync(
    connection_id: str,
    request: Request,
    body: SyncRequest | None = None,
    stream: bool = Query(default=False, description="Stream progress as Server-Sent Events."),
    user_id: str = Depends(get_current_user_id),
    service: CalendarSyncService = Depends(_get_service),
) -> Response:
    """Start a sync run for one connection.

    Progress events: ``state``, ``progress``, ``month_started``,
    ``month_result``, then exactly one terminal ``complete``, ``error``,
    ``cancelled`` or ``timed_out`` event.
    """
    policy = body.to_policy() if body is not None else None
    handle = await service.start_sync(connection_id, policy, user_id=user_id)
    if stream:
        return _sse_response(request, handle)

    payload = SyncStartResponse(
        run_id=handle.run_id,
        connection_id=connection_id,
        window=(policy or service.default_policy).describe(),
        events_url=f"{router.prefix}/{connection_id}/sync/events",
    )
    return JSONResponse(
        status_code=202,
        content=ApiResponse[SyncStartResponse](data=payload).model_dump(mode="json"),
    )


@router.get("/{connection_id}/sync/events")
async def sync_events(
    connection_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: CalendarSyncService = Depends(_get_service),
) -> StreamingResponse:
    """Progress stream for the connection's in-flight sync run."""
    await service.get_connection(connection_id, user_id=user_id)
    handle = service.active_sync(connection_id)
    if handle is None:
        raise HTTPException(status_code=404, detail="No sync is running for this connection")
    return _sse_response(request, handle)


@router.delete("/{connection_id}/sync", response_model=ApiResponse[SyncCancelResponse])
async def cancel_sync(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[SyncCancelResponse]:
    await service.get_connection(connection_id, user_id=user_id)
    cancelled = service.cancel_sync(connection_id)
    return ApiResponse[SyncCancelResponse](
        data=SyncCancelResponse(connection_id=connection_id, cancelled=cancelled)
    )


@router.get("/{connection_id}/progress", response_model=ApiResponse[list[ProgressRow]])
async def sync_progress(
    connection_id: str,
    since_id: int | None = Query(default=None, ge=0),
    limit: int = Query(default=200, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[list[ProgressRow]]:
    """Persisted progress milestones, oldest first, after ``since_id``."""
    rows = await service.sync_progress(connection_id, since_id, limit=limit, user_id=user_id)
    return ApiResponse[list[ProgressRow]](data=rows)


@router.get("/{connection_id}/meetings", response_model=ApiResponse[list[MeetingResponse]])
async def list_meetings(
    connection_id: str,
    limit: int = Query(default=500, ge=1, le=1000),
    user_id: str = Depends(get_current_user_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[list[MeetingResponse]]:
    meetings = await service.list_meetings(connection_id, user_id=user_id, limit=limit)
    return ApiResponse[list[MeetingResponse]](
        data=[MeetingResponse.from_meeting(m) for m in meetings]
    )
