from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

CONNECTION_LOST_MESSAGE = "Connection lost."
RECONNECTING_MESSAGE = "Reconnecting..."
STARTING_MESSAGE = "Starting..."


async def iter_sse_payloads(lines: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    """
    Decode server-sent events into their JSON payloads. Comment lines (the
    heartbeat) are skipped; a blank line ends one event.
    """
    data_lines: List[str] = []
    async for line in lines:
        if not line:
            if data_lines:
                yield json.loads("\n".join(data_lines))
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip(" "))
    if data_lines:
        yield json.loads("\n".join(data_lines))


@dataclass
class ProcessingView:
    """What a reader's page shows for one job, built from its events."""

    step: str = "fetching"
    status_message: str = STARTING_MESSAGE
    content: str = ""
    breadtext: str = ""
    images: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    formatted_finished: bool = False
    breadtext_finished: bool = False
    closed: bool = False

    def apply(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("type")
        if kind == "status":
            message = payload.get("message", "")
            self.status_message = message
            if "Fetching" in message:
                self.step = "fetching"
            elif "Extracting" in message:
                self.step = "extracting"
            elif "Summarizing" in message:
                self.step = "summarizing"
            elif message == "Complete":
                self.step = "done"
        elif kind == "formatted_chunk":
            self.content += payload.get("text", "")
        elif kind == "breadtext_chunk":
            self.breadtext += payload.get("text", "")
        elif kind == "content":
            self.content = payload.get("text", "")
        elif kind == "breadtext":
            self.breadtext = payload.get("text", "")
        elif kind == "formatted_done":
            self.formatted_finished = True
        elif kind == "breadtext_done":
            self.breadtext_finished = True
        elif kind == "images":
            self.images = list(payload.get("images") or [])
        elif kind == "error":
            self.errors.append(payload.get("message", ""))
        elif kind == "done":
            self.step = "done"
            self.closed = True
        else:
            logger.debug("Ignoring unknown event type %r", kind)

    def reset_outputs(self) -> None:
        # A reconnect either replays full outputs or regenerates them from the start.
        self.content = ""
        self.breadtext = ""
        self.images = []
        self.formatted_finished = False
        self.breadtext_finished = False

    def fail(self, message: str) -> None:
        self.step = "error"
        self.errors.append(message)
        self.closed = True


class ResultStreamClient:
    """
    Follows one job's event stream and reconnects when the stream breaks
    before `done`: up to `max_retries` attempts, waiting 1s, 2s, 4s (doubling
    from `base_delay`). Any received event resets the attempt counter. Once the
    retries are used up the view is closed with a "Connection lost." error.
    """

    def __init__(
        self,
        base_url: str,
        job_id: str,
        user_id: str,
        max_retries: int = 3,
        base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url
        self.job_id = job_id
        self.user_id = user_id
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._transport = transport
        self._sleep = sleep
        self.view = ProcessingView()

    @property
    def stream_path(self) -> str:
        return f"/jobs/{self.job_id}/stream"

    async def follow(self, on_event: Optional[Callable[[Dict[str, Any]], None]] = None) -> ProcessingView:
        attempts = 0
        connections = 0
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-User-Id": self.user_id},
            timeout=httpx.Timeout(30.0, read=None),
            transport=self._transport,
        ) as client:
            while not self.view.closed:
                if connections:
                    self.view.reset_outputs()
                connections += 1
                try:
                    async with client.stream("GET", self.stream_path) as response:
                        response.raise_for_status()
                        async for payload in iter_sse_payloads(response.aiter_lines()):
                            attempts = 0
                            self.view.apply(payload)
                            if on_event is not None:
                                on_event(payload)
                            if self.view.closed:
                                break
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning("Stream for job %s broke: %s", self.job_id, exc)

                if self.view.closed:
                    break
                if attempts >= self.max_retries:
                    logger.error("Giving up on job %s after %s reconnect attempt(s)", self.job_id, attempts)
                    self.view.fail(CONNECTION_LOST_MESSAGE)
                    break
                delay = self.base_delay * (2**attempts)
                attempts += 1
                self.view.status_message = RECONNECTING_MESSAGE
                logger.info("Reconnecting to job %s in %.1fs (attempt %s)", self.job_id, delay, attempts)
                await self._sleep(delay)
        return self.view

    async def retry(self, on_event: Optional[Callable[[Dict[str, Any]], None]] = None) -> ProcessingView:
        """Start over with a fresh view and a fresh attempt counter."""
        self.view = ProcessingView(status_message=RECONNECTING_MESSAGE)
        return await self.follow(on_event)
