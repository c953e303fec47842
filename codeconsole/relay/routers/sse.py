"""SSE relay endpoints.

Thin HTTP adapter -- delegates to the aggregator.  The aggregator reports an
unknown client by returning ``False``; translating that into 404 is this
module's job.
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, HTTPException, Query, status
from sse_starlette import EventSourceResponse, ServerSentEvent

from codeconsole.relay.aggregator import STREAM_END, RelayShuttingDownError
from codeconsole.relay.deps import Aggregator
from codeconsole.relay.models import (
    RelayStatusResponse,
    SSESubscribeRequest,
    SSEVisibilityRequest,
    SuccessResponse,
)
from codeconsole.settings import get_settings

router = APIRouter(prefix="/sse", tags=["sse"])

_STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-store, no-transform",
    "X-Accel-Buffering": "no",
}


def _heartbeat() -> ServerSentEvent:
    return ServerSentEvent(event="heartbeat", data=json.dumps({"timestamp": int(time.time() * 1000)}))


def _client_not_found(client_id: str) -> HTTPException:
    return HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Client '{client_id}' not found.")


@router.get("/stream")
async def handle_stream(
    aggregator: Aggregator,
    directories: str | None = Query(None, description="Comma-separated directories to subscribe to."),
) -> EventSourceResponse:
    requested = [d for d in (directories or "").split(",") if d]
    try:
        client = aggregator.add_client(requested)
    except RelayShuttingDownError:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Relay is shutting down.") from None

    async def _events() -> AsyncIterator[dict[str, Any]]:
        try:
            yield {
                "event": "connected",
                "data": json.dumps({"clientId": client.id, "directories": requested, **aggregator.connection_status()}),
            }
            while True:
                item = await client.queue.get()
                if item is STREAM_END:
                    break
                event, data = item
                yield {"event": event, "data": data}
        finally:
            aggregator.remove_client(client.id)

    return EventSourceResponse(
        _events(),
        ping=get_settings().heartbeat_interval,
        ping_message_factory=_heartbeat,
        headers=_STREAM_HEADERS,
    )


@router.post("/subscribe", response_model=SuccessResponse)
async def handle_subscribe(body: SSESubscribeRequest, aggregator: Aggregator) -> SuccessResponse:
    if not aggregator.add_directories(body.client_id, body.directories):
        raise _client_not_found(body.client_id)
    return SuccessResponse()


@router.post("/unsubscribe", response_model=SuccessResponse)
async def handle_unsubscribe(body: SSESubscribeRequest, aggregator: Aggregator) -> SuccessResponse:
    if not aggregator.remove_directories(body.client_id, body.directories):
        raise _client_not_found(body.client_id)
    return SuccessResponse()


@router.post("/visibility", response_model=SuccessResponse)
async def handle_visibility(body: SSEVisibilityRequest, aggregator: Aggregator) -> SuccessResponse:
    if not aggregator.set_client_visibility(body.client_id, body.visible, body.active_session_id):
        raise _client_not_found(body.client_id)
    return SuccessResponse()


@router.get("/status", response_model=RelayStatusResponse, response_model_by_alias=True)
async def handle_status(aggregator: Aggregator) -> RelayStatusResponse:
    return RelayStatusResponse(
        **aggregator.connection_status(),
        clients=aggregator.client_count,
        directories=aggregator.active_directories(),
        active_sessions=aggregator.active_sessions(),
    )
