from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import AsyncIterator, Awaitable, Callable, Optional

from .cancellation import CancellationToken
from .models import StreamEvent

logger = logging.getLogger(__name__)

HEARTBEAT = ": heartbeat\n\n"
TIMEOUT_MESSAGE = "Processing timed out."
DEFAULT_HEARTBEAT_SECONDS = 15.0
DEFAULT_TIMEOUT_SECONDS = 600.0

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_END = object()


def encode_event(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_payload(), ensure_ascii=False)}\n\n"


class StreamTransport:
    """
    Relays a job's events as server-sent events.

    The events are produced by a separate task feeding a queue, so a slow
    upstream stage never holds the connection silent: a heartbeat comment is
    written whenever the heartbeat interval elapses. A client disconnect or
    the overall timeout cancels the token and the producing task; nothing is
    written to the job on that path.
    """

    def __init__(
        self,
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.heartbeat_seconds = heartbeat_seconds
        self.timeout_seconds = timeout_seconds

    async def stream(
        self,
        events: AsyncIterator[StreamEvent],
        cancel: CancellationToken,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        pump = asyncio.create_task(self._pump(events, queue), name="event-pump")
        deadline = loop.time() + self.timeout_seconds
        next_heartbeat = loop.time() + self.heartbeat_seconds
        finished = False
        try:
            while True:
                if is_disconnected is not None and await is_disconnected():
                    cancel.cancel("client disconnected")
                    return

                now = loop.time()
                if now >= deadline:
                    logger.warning("Stream exceeded %ss, cancelling the run", self.timeout_seconds)
                    cancel.cancel("timeout")
                    finished = True
                    yield encode_event(StreamEvent.error(TIMEOUT_MESSAGE))
                    yield encode_event(StreamEvent.done())
                    return
                if now >= next_heartbeat:
                    next_heartbeat = now + self.heartbeat_seconds
                    yield HEARTBEAT
                    continue

                try:
                    item = await asyncio.wait_for(queue.get(), timeout=min(next_heartbeat, deadline) - now)
                except asyncio.TimeoutError:
                    continue

                if item is _END:
                    finished = True
                    return
                yield encode_event(item)
                if item.is_terminal:
                    finished = True
                    return
        finally:
            if not finished:
                cancel.cancel("stream closed")
            if not pump.done():
                pump.cancel()
            with suppress(asyncio.CancelledError):
                await pump

    async def _pump(self, events: AsyncIterator[StreamEvent], queue: asyncio.Queue) -> None:
        try:
            async for event in events:
                queue.put_nowait(event)
        finally:
            queue.put_nowait(_END)
