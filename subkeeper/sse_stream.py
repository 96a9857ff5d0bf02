"""
SSE streaming of task updates.

Streams send the current matching tasks first, then forward every
broadcast snapshot that passes the subscriber's filter.
"""

import asyncio
import json
from collections.abc import Callable
from typing import Any

from fastapi import Request
from sse_starlette.sse import EventSourceResponse

from subkeeper.broadcaster import TaskPredicate, TaskUpdateBroadcaster
from subkeeper.extensions import sse_executor


def wants_sse(request: Request) -> bool:
    """Check if the client wants an SSE stream."""
    return "text/event-stream" in request.headers.get("accept", "")


def sse_cors_headers(request: Request) -> dict:
    """
    Generate CORS headers for SSE responses.

    Args:
        request: The incoming FastAPI request.

    Returns:
        Dictionary of CORS headers.
    """
    origin = request.headers.get("origin", "*")
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
    }


async def create_task_stream(
    broadcaster: TaskUpdateBroadcaster,
    predicate: TaskPredicate | None = None,
    fetch_initial: Callable[[], Any] | None = None,
    heartbeat_interval: int = 30,
):
    """
    Create an SSE generator of task snapshots.

    Args:
        broadcaster: Source of task updates.
        predicate: Optional filter applied to each update.
        fetch_initial: Function returning the initial snapshot list
            (called in executor), or None to skip it.
        heartbeat_interval: Seconds between heartbeat comments.

    Yields:
        SSE event dicts with 'event'/'data' or 'comment' keys.
    """
    async with broadcaster.subscribe(predicate) as subscription:
        if fetch_initial is not None:
            event_loop = asyncio.get_running_loop()
            data = await event_loop.run_in_executor(sse_executor, fetch_initial)
            yield {"event": "snapshot", "data": json.dumps(data, default=str)}

        while True:
            try:
                snapshot = await asyncio.wait_for(
                    subscription.get(), timeout=heartbeat_interval
                )
            except TimeoutError:
                yield {"comment": "heartbeat"}
                continue

            if snapshot is None:
                # Broadcaster stopped
                return
            yield {"event": "task", "data": json.dumps(snapshot.to_dict())}


def sse_response(
    request: Request,
    broadcaster: TaskUpdateBroadcaster,
    predicate: TaskPredicate | None = None,
    **kwargs,
) -> EventSourceResponse:
    """
    Create an SSE response with proper headers.

    Args:
        request: FastAPI request object (used for CORS origin).
        broadcaster: Source of task updates.
        predicate: Optional filter applied to each update.
        **kwargs: Additional arguments passed to create_task_stream.

    Returns:
        EventSourceResponse configured for SSE streaming.
    """
    return EventSourceResponse(
        create_task_stream(broadcaster, predicate, **kwargs),
        headers=sse_cors_headers(request),
    )
