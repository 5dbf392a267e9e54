"""Server-sent-event channel for long-running collection runs.

A collection takes minutes, longer than proxies keep a silent request
open. The run executes in its own task and pushes progress into a queue;
the response drains the queue as SSE frames and sends comment keep-alives
while the run is quiet. If the client goes away the run is asked to stop
through ``cancel_event`` and finishes the unit of work it is in.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from fastapi import Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # nginx: do not buffer the stream
}

# Runs outlive the response that started them; keep a reference until done
_running: set[asyncio.Task] = set()


def format_event(event: str, data: Any) -> str:
    """One SSE frame: ``event: <name>`` plus a JSON ``data`` line."""
    return f"event: {event}\ndata: {json.dumps(data, default=str, ensure_ascii=False)}\n\n"


class EventChannel:
    """Progress queue + cancellation flag shared by a run and its stream."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[tuple[str, Any] | None] = asyncio.Queue()
        self.cancel_event = asyncio.Event()

    async def progress(self, message: str) -> None:
        await self.queue.put(("progress", {"message": message}))

    async def done(self, summary: Any) -> None:
        if isinstance(summary, BaseModel):
            summary = summary.model_dump(mode="json")
        await self.queue.put(("done", summary))

    async def error(self, message: str) -> None:
        await self.queue.put(("error", {"message": message}))

    async def close(self) -> None:
        await self.queue.put(None)


RunFactory = Callable[[EventChannel], Awaitable[Any]]


async def _run_worker(channel: EventChannel, run: RunFactory) -> None:
    try:
        summary = await run(channel)
        await channel.done(summary)
    except Exception as e:
        logger.error("Streamed run failed: %s", e, exc_info=True)
        await channel.error(str(e))
    finally:
        await channel.close()


async def event_stream(
    request: Request | None,
    channel: EventChannel,
    run: RunFactory,
    keepalive_seconds: float = 15.0,
    timeout_seconds: float = 600.0,
) -> AsyncIterator[str]:
    """Start ``run`` in its own task and yield its events as SSE frames.

    Exactly one terminal ``done`` or ``error`` event ends a normal stream.
    """
    task = asyncio.create_task(_run_worker(channel, run))
    _running.add(task)
    task.add_done_callback(_running.discard)

    deadline = time.monotonic() + timeout_seconds
    try:
        while True:
            try:
                item = await asyncio.wait_for(channel.queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                if request is not None and await request.is_disconnected():
                    logger.info("Client disconnected, cancelling run")
                    break
                if time.monotonic() > deadline:
                    yield format_event("error", {"message": "Run timed out"})
                    break
                yield ": keep-alive\n\n"
                continue

            if item is None:
                break
            event, data = item
            yield format_event(event, data)
    finally:
        if not task.done():
            channel.cancel_event.set()


def event_stream_response(
    request: Request | None,
    run: RunFactory,
    keepalive_seconds: float = 15.0,
    timeout_seconds: float = 600.0,
) -> StreamingResponse:
    channel = EventChannel()
    return StreamingResponse(
        event_stream(request, channel, run, keepalive_seconds, timeout_seconds),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
