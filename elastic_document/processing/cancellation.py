from __future__ import annotations

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Single cancellation signal shared by every stage of one job run.

    Stages poll `cancelled` between increments. Stages that block on other
    tasks also await `wait()`, so a cancel wakes them even when no producer
    makes progress.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info("Job run cancelled: %s", reason)

    async def wait(self) -> None:
        await self._event.wait()
