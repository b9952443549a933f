"""SSE (Server-Sent Events) endpoint for realtime row changes.

Each connection subscribes to the caller's change feed for sessions, tasks
and queue items, and forwards every committed change as an event named
after its table.
"""

import asyncio
import json
import logging
from typing import AsyncGenerator, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from api.deps import get_change_feed, get_current_user_id
from config import get_config
from services.realtime import REALTIME_TABLES, ChangeFeed, RealtimeSubscription, RowChange

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["events"])


def format_sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def event_stream(
    feed: ChangeFeed,
    user_id: str,
    keepalive_seconds: float = 15.0,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncGenerator[str, None]:
    """Yield SSE frames for ``user_id`` until the client goes away."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def forward(change: RowChange) -> None:
        # Publishers may run outside the loop thread
        loop.call_soon_threadsafe(queue.put_nowait, change)

    subscription = RealtimeSubscription(feed, user_id, {table: forward for table in REALTIME_TABLES})
    with subscription:
        yield format_sse("ready", {"tables": list(REALTIME_TABLES)})
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            try:
                change = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                # Send keepalive comment
                yield ": keepalive\n\n"
                continue
            yield format_sse(change.table, change.to_payload())
    logger.debug(f"SSE stream closed for {user_id}")


@router.get("/events")
async def sse_endpoint(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """SSE endpoint for realtime updates.

    Events:
    - ready: subscription is live
    - sessions: a focus session row changed
    - tasks: a task row changed
    - task_queue_items: a queue row changed
    """
    return StreamingResponse(
        event_stream(feed, user_id, get_config().realtime.keepalive_seconds, request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
