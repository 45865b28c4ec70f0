from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from .models import ClaimOutcome, ClaimResult
from .repository import JobRepository

logger = logging.getLogger(__name__)


class ClaimCoordinator:
    """
    Grants the exclusive right to run a job's expensive stages. The claim lives
    in the job row, so it holds across request handlers and processes without
    any in-process lock.
    """

    def __init__(self, repository: JobRepository, claim_ttl_seconds: int = 900):
        self.repo = repository
        self.claim_ttl_seconds = claim_ttl_seconds

    async def try_claim(self, job_id: str) -> ClaimResult:
        result = await asyncio.to_thread(self.repo.try_claim, job_id)
        if result.outcome == ClaimOutcome.CLAIMED:
            logger.info("Claimed job %s", job_id)
        else:
            logger.info("Claim for job %s not granted: %s", job_id, result.outcome.value)
        return result

    async def release(self, job_id: str, token: Optional[str]) -> bool:
        if not token:
            return False
        released = await asyncio.to_thread(self.repo.release_claim, job_id, token)
        if released:
            logger.info("Released claim on job %s", job_id)
        else:
            logger.debug("Claim on job %s no longer held by this attempt; nothing released", job_id)
        return released

    def reap_stale_claims(self, now: Optional[datetime] = None) -> int:
        """
        Reset claims older than the TTL so a job abandoned by a cancelled or
        crashed handler can be picked up again.
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(seconds=self.claim_ttl_seconds)
        reaped = self.repo.reap_stale_claims(cutoff)
        if reaped:
            logger.warning("Reaped %s stale claim(s) older than %s", reaped, cutoff.isoformat())
        return reaped
