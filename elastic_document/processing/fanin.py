from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

from .cancellation import CancellationToken
from .generation import GenerationService
from .models import GenerationRequest, OutputVariant, StreamEvent

logger = logging.getLogger(__name__)

VARIANTS = (OutputVariant.FORMATTED, OutputVariant.BREADTEXT)
CHANNEL_SIZE = 64


@dataclass
class FanInResult:
    formatted_text: str
    breadtext_text: str
    formatted_error: Optional[str] = None
    breadtext_error: Optional[str] = None


class DualGenerationFanIn:
    """
    Runs the formatted and breadtext producers as independent tasks and merges
    their chunks into one event sequence.

    Each producer writes into its own bounded channel and raises the wake
    signal; `events` is the single consumer. Entries carry a sequence number
    taken at send time, and the consumer always hands out the oldest head
    across channels, so order inside one variant is preserved while the
    interleaving of the two follows arrival timing. A full channel only
    suspends its own producer.

    A failing formatted producer is reported as an error event; a failing
    breadtext producer is only logged. `result` is set once both producers
    have finished and every buffered event has been handed out.
    """

    def __init__(
        self,
        generator: GenerationService,
        request: GenerationRequest,
        cancel: CancellationToken,
        channel_size: int = CHANNEL_SIZE,
    ):
        self.generator = generator
        self.request = request
        self.cancel = cancel
        self.result: Optional[FanInResult] = None
        self._channels: Dict[OutputVariant, asyncio.Queue] = {
            variant: asyncio.Queue(maxsize=channel_size) for variant in VARIANTS
        }
        self._heads: Dict[OutputVariant, Optional[Tuple[int, StreamEvent]]] = {variant: None for variant in VARIANTS}
        self._sequence = itertools.count()
        self._wake = asyncio.Event()
        self._finished: Set[OutputVariant] = set()
        self._parts: Dict[OutputVariant, List[str]] = {variant: [] for variant in VARIANTS}
        self._errors: Dict[OutputVariant, str] = {}

    async def _send(self, variant: OutputVariant, event: StreamEvent) -> None:
        await self._channels[variant].put((next(self._sequence), event))
        self._wake.set()

    async def _produce(self, variant: OutputVariant) -> None:
        try:
            await self._consume(variant)
            if not self.cancel.cancelled:
                await self._send(variant, StreamEvent.stream_done(variant))
        finally:
            self._finished.add(variant)
            self._wake.set()

    async def _consume(self, variant: OutputVariant) -> None:
        try:
            async for chunk in self.generator.stream(self.request, variant):
                if self.cancel.cancelled:
                    return
                if not chunk:
                    continue
                self._parts[variant].append(chunk)
                await self._send(variant, StreamEvent.chunk(variant, chunk))
        except Exception as exc:  # noqa: BLE001
            self._errors[variant] = str(exc) or exc.__class__.__name__
            if variant == OutputVariant.FORMATTED:
                logger.error("Formatted generation failed: %s", exc)
                await self._send(variant, StreamEvent.error(f"Summarization failed: {self._errors[variant]}"))
            else:
                logger.warning("Breadtext generation failed, continuing without it: %s", exc)

    def _next_ready(self) -> Optional[StreamEvent]:
        for variant, channel in self._channels.items():
            if self._heads[variant] is None and not channel.empty():
                self._heads[variant] = channel.get_nowait()
        ready = [(head[0], variant) for variant, head in self._heads.items() if head is not None]
        if not ready:
            return None
        _, variant = min(ready)
        _, event = self._heads[variant]
        self._heads[variant] = None
        return event

    async def _wait_for_wake(self) -> None:
        # Cancellation must wake the consumer even while both producers are stalled.
        waiters = {
            asyncio.create_task(self._wake.wait()),
            asyncio.create_task(self.cancel.wait()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

    async def events(self) -> AsyncIterator[StreamEvent]:
        tasks = [asyncio.create_task(self._produce(variant), name=f"generate-{variant.value}") for variant in VARIANTS]
        try:
            while not self.cancel.cancelled:
                event = self._next_ready()
                if event is not None:
                    yield event
                    continue
                if len(self._finished) == len(VARIANTS):
                    break
                self._wake.clear()
                await self._wait_for_wake()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.cancel.cancelled:
            return
        self.result = FanInResult(
            formatted_text="".join(self._parts[OutputVariant.FORMATTED]),
            breadtext_text="".join(self._parts[OutputVariant.BREADTEXT]),
            formatted_error=self._errors.get(OutputVariant.FORMATTED),
            breadtext_error=self._errors.get(OutputVariant.BREADTEXT),
        )
