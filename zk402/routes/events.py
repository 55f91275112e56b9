"""
GET /events - live lifecycle events as a server-sent-events stream.
"""
import asyncio
import logging

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from ..lib.events import EventStep, format_sse, make_event
from ..models.common import EventStatus

logger = logging.getLogger("events")

router = APIRouter(tags=["events"])

KEEPALIVE_SECS = 15.0


async def event_stream(request: Request, bus):
    sub = bus.subscribe()
    try:
        yield format_sse(make_event(
            EventStep.CONNECTED, "Connected", "SSE stream established.", "Server", EventStatus.SUCCESS,
        ))
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(sub.get(), timeout=KEEPALIVE_SECS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_sse(event)
    finally:
        sub.close()
        logger.info(f"SSE client disconnected ({bus.subscriber_count} remaining)")


@router.get("/events")
async def stream_events(request: Request):
    return StreamingResponse(
        event_stream(request, request.app.state.events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
