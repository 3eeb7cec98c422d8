"""
Progress channel for optimization runs.

GET /trips/{trip_id}/progress
    Latest event for the trip (in-process broker first, then the Redis mirror).

GET /trips/{trip_id}/progress/stream
    Server-Sent Events. The first event is the latest one (if any), then every
    later event in publish order. Each frame:

        id: <stage>:<timestamp>
        event: progress
        data: {"tripId", "runId", "stage", "progress", "message", ...}

    The id doubles as the de-duplication key. A ": keep-alive" comment is sent
    every settings.progress_heartbeat_s while idle. The stream ends after a
    complete/error event unless follow=true.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from services.planner.realtime.broker import ProgressBroker
from services.planner.realtime.progress import STAGE_COMPLETE, STAGE_ERROR, ProgressEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trips", tags=["progress"])

_TERMINAL = {STAGE_COMPLETE, STAGE_ERROR}


def format_sse(event: ProgressEvent) -> str:
    stage, stamp = event.dedup_key
    return (
        f"id: {stage}:{stamp}\n"
        "event: progress\n"
        f"data: {json.dumps(event.to_dict())}\n\n"
    )


async def event_stream(
    broker: ProgressBroker,
    trip_id: str,
    heartbeat_s: float,
    follow: bool = False,
) -> AsyncIterator[str]:
    sub = broker.subscribe(trip_id)
    logger.info("progress stream open: trip=%s subscribers=%d", trip_id, broker.subscriber_count(trip_id))
    try:
        while True:
            try:
                event = await sub.get(timeout=heartbeat_s)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            if event is None:
                break
            yield format_sse(event)
            if event.stage in _TERMINAL and not follow:
                break
    finally:
        sub.close()
        logger.info("progress stream closed: trip=%s", trip_id)


@router.get("/{trip_id}/progress")
async def get_progress(trip_id: str, request: Request) -> dict:
    broker: ProgressBroker = request.app.state.broker
    event = await broker.latest_or_stored(trip_id)
    if event is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NO_PROGRESS", "message": f"No optimization progress for trip {trip_id!r}."},
        )
    return {
        "success": True,
        "data": event.to_dict(),
        "requestId": request.state.request_id,
    }


@router.get("/{trip_id}/progress/stream")
async def stream_progress(
    trip_id: str,
    request: Request,
    follow: bool = Query(default=False, description="Keep the stream open after a run finishes"),
) -> StreamingResponse:
    broker: ProgressBroker = request.app.state.broker
    heartbeat_s = request.app.state.settings.progress_heartbeat_s
    return StreamingResponse(
        event_stream(broker, trip_id, heartbeat_s, follow=follow),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
