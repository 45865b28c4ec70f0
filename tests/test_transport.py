import asyncio
import json

import pytest

from elastic_document.processing import CancellationToken, StreamEvent, StreamTransport, encode_event
from elastic_document.processing.transport import HEARTBEAT, TIMEOUT_MESSAGE


def _decode(frames):
    return [json.loads(frame[len("data: ") :]) for frame in frames if frame.startswith("data: ")]


async def _events(*events, delay=0.0):
    for event in events:
        if delay:
            await asyncio.sleep(delay)
        yield event


def test_event_is_one_data_line():
    frame = encode_event(StreamEvent.status("Complete"))
    assert frame == 'data: {"type": "status", "message": "Complete"}\n\n'


def test_non_ascii_text_is_kept_verbatim():
    frame = encode_event(StreamEvent.full_content("Zusammenfassung für Köln"))
    assert "für Köln" in frame


@pytest.mark.anyio
async def test_relays_events_until_done():
    transport = StreamTransport(heartbeat_seconds=5, timeout_seconds=5)
    cancel = CancellationToken()
    source = _events(StreamEvent.status("Extracting text and images..."), StreamEvent.done(), StreamEvent.status("late"))

    frames = [frame async for frame in transport.stream(source, cancel)]

    assert _decode(frames) == [{"type": "status", "message": "Extracting text and images..."}, {"type": "done"}]
    assert not cancel.cancelled


@pytest.mark.anyio
async def test_heartbeat_fires_while_upstream_is_silent():
    transport = StreamTransport(heartbeat_seconds=0.02, timeout_seconds=5)
    source = _events(StreamEvent.status("Summarizing and restructuring..."), StreamEvent.done(), delay=0.09)

    frames = [frame async for frame in transport.stream(source, CancellationToken())]

    assert HEARTBEAT in frames
    assert frames[-1] == encode_event(StreamEvent.done())


@pytest.mark.anyio
async def test_timeout_cancels_and_reports():
    finished = []

    async def slow():
        try:
            yield StreamEvent.status("Extracting text and images...")
            await asyncio.sleep(10)
            yield StreamEvent.done()
        finally:
            finished.append(True)

    transport = StreamTransport(heartbeat_seconds=5, timeout_seconds=0.05)
    cancel = CancellationToken()

    frames = [frame async for frame in transport.stream(slow(), cancel)]

    assert _decode(frames)[-2:] == [{"type": "error", "message": TIMEOUT_MESSAGE}, {"type": "done"}]
    assert cancel.cancelled and cancel.reason == "timeout"
    assert finished == [True]


@pytest.mark.anyio
async def test_disconnect_cancels_the_run():
    checks = []

    async def is_disconnected():
        checks.append(True)
        return len(checks) > 1

    async def endless():
        while True:
            await asyncio.sleep(0.001)
            yield StreamEvent.status("Summarizing and restructuring...")

    transport = StreamTransport(heartbeat_seconds=5, timeout_seconds=5)
    cancel = CancellationToken()

    frames = [frame async for frame in transport.stream(endless(), cancel, is_disconnected=is_disconnected)]

    assert len(frames) == 1
    assert cancel.reason == "client disconnected"


@pytest.mark.anyio
async def test_producer_crash_propagates_after_relayed_frames():
    async def broken():
        yield StreamEvent.status("Fetching web pages...")
        raise RuntimeError("boom")

    transport = StreamTransport(heartbeat_seconds=5, timeout_seconds=5)
    frames = []
    with pytest.raises(RuntimeError, match="boom"):
        async for frame in transport.stream(broken(), CancellationToken()):
            frames.append(frame)

    assert _decode(frames) == [{"type": "status", "message": "Fetching web pages..."}]
