"""Unit tests for the server-sent-event channel."""

from __future__ import annotations

import asyncio
import json

import pytest

from sinapicalc.models import CollectSummary
from sinapicalc.web.streaming import EventChannel, event_stream, format_event


def _parse(frame: str) -> tuple[str, dict]:
    event_line, data_line = frame.strip().split("\n")
    return event_line.removeprefix("event: "), json.loads(data_line.removeprefix("data: "))


class FakeRequest:
    def __init__(self, disconnected: bool = False):
        self.disconnected = disconnected

    async def is_disconnected(self) -> bool:
        return self.disconnected


def test_format_event():
    frame = format_event("progress", {"message": "Importação"})
    assert frame == 'event: progress\ndata: {"message": "Importação"}\n\n'


@pytest.mark.asyncio
async def test_progress_then_done():
    channel = EventChannel()

    async def run(ch: EventChannel):
        await ch.progress("step 1")
        await ch.progress("step 2")
        return CollectSummary(reference_month="2024-01", file_name="ref.xlsx")

    frames = [frame async for frame in event_stream(FakeRequest(), channel, run)]
    events = [_parse(frame) for frame in frames]

    assert [name for name, _ in events] == ["progress", "progress", "done"]
    assert events[0][1] == {"message": "step 1"}
    assert events[2][1]["reference_month"] == "2024-01"
    assert events[2][1]["resources"] == {"total": 0, "imported": 0}


@pytest.mark.asyncio
async def test_failure_ends_with_single_error_event():
    channel = EventChannel()

    async def run(ch: EventChannel):
        await ch.progress("starting")
        raise RuntimeError("archive missing")

    frames = [frame async for frame in event_stream(FakeRequest(), channel, run)]
    events = [_parse(frame) for frame in frames]

    assert [name for name, _ in events] == ["progress", "error"]
    assert events[-1][1] == {"message": "archive missing"}


@pytest.mark.asyncio
async def test_keepalive_while_idle():
    channel = EventChannel()
    release = asyncio.Event()

    async def run(ch: EventChannel):
        await release.wait()
        return {"ok": True}

    frames = []
    async for frame in event_stream(FakeRequest(), channel, run, keepalive_seconds=0.01):
        frames.append(frame)
        if frame.startswith(":"):
            release.set()

    assert frames[0] == ": keep-alive\n\n"
    assert _parse(frames[-1]) == ("done", {"ok": True})


@pytest.mark.asyncio
async def test_disconnect_sets_cancel_event():
    channel = EventChannel()
    stopped = asyncio.Event()

    async def run(ch: EventChannel):
        await ch.cancel_event.wait()
        stopped.set()
        return None

    frames = [
        frame
        async for frame in event_stream(
            FakeRequest(disconnected=True), channel, run, keepalive_seconds=0.01
        )
    ]

    assert frames == []
    assert channel.cancel_event.is_set()
    await asyncio.wait_for(stopped.wait(), timeout=1)
