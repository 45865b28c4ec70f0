from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from .cancellation import CancellationToken
from .claims import ClaimCoordinator
from .errors import EmptyExtractionError, JobNotFoundError
from .extraction import ExtractionStage
from .fanin import DualGenerationFanIn
from .generation import GenerationService
from .models import (
    EMPTY_CONTENT_PHRASE,
    ClaimOutcome,
    ClaimResult,
    GenerationRequest,
    JobRecord,
    StreamEvent,
)
from .ocr import OcrService
from .repository import JobRepository
from .scraper import UrlScraper

logger = logging.getLogger(__name__)

COMPLETE_STATUS = "Complete"
WAITING_STATUS = "Already processing in another request. Please wait..."
SUMMARIZING_STATUS = "Summarizing and restructuring..."
GENERATION_FAILED_MESSAGE = "Failed to generate summary. Please try again."
PROCESSING_FAILED_MESSAGE = "Processing failed. Please try again."


def select_output_images(extracted_images: List[str], *outputs: str) -> List[str]:
    selected: List[str] = []
    for image in extracted_images:
        if image in selected:
            continue
        if any(image in output for output in outputs):
            selected.append(image)
    return selected


def replay_events(job: JobRecord) -> List[StreamEvent]:
    events = [StreamEvent.status(COMPLETE_STATUS), StreamEvent.full_content(job.formatted_output)]
    if job.breadtext_output:
        events.append(StreamEvent.full_breadtext(job.breadtext_output))
    events.append(StreamEvent.image_set(job.output_images))
    events.append(StreamEvent.done())
    return events


class JobProcessor:
    """
    Drives a job from its persisted state to streamed output:
    replay if already complete -> claim -> extraction (skipped once done)
    -> dual generation -> validation -> persistence.

    Every path ends with a `done` event. Failures are turned into an `error`
    event first and release the claim through the token-guarded update, so a
    later connection can retry. Cancellation (the token, or the driving task
    being cancelled) stops the run without touching the job row.
    """

    def __init__(
        self,
        repository: JobRepository,
        claims: ClaimCoordinator,
        ocr: OcrService,
        scraper: UrlScraper,
        generator: GenerationService,
    ):
        self.repo = repository
        self.claims = claims
        self.ocr = ocr
        self.scraper = scraper
        self.generator = generator

    async def load_job(self, job_id: str, owner_id: str) -> JobRecord:
        job = await asyncio.to_thread(self.repo.get_job, job_id)
        if not job or job.owner_id != owner_id:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    async def process(self, job: JobRecord, cancel: CancellationToken) -> AsyncIterator[StreamEvent]:
        if job.is_complete:
            for event in replay_events(job):
                yield event
            return

        claim: Optional[ClaimResult] = None
        try:
            claim = await self.claims.try_claim(job.id)
            if claim.outcome == ClaimOutcome.ALREADY_IN_PROGRESS:
                yield StreamEvent.status(WAITING_STATUS)
                yield StreamEvent.done()
                return
            async for event in self._run(job, claim, cancel):
                yield event
        except EmptyExtractionError as exc:
            logger.info("No content extracted for job %s", job.id)
            await self.claims.release(job.id, claim.token if claim else None)
            yield StreamEvent.error(str(exc))
            yield StreamEvent.done()
        except Exception:
            logger.exception("Processing failed for job %s", job.id)
            await self.claims.release(job.id, claim.token if claim else None)
            yield StreamEvent.error(PROCESSING_FAILED_MESSAGE)
            yield StreamEvent.done()

    async def _run(self, job: JobRecord, claim: ClaimResult, cancel: CancellationToken) -> AsyncIterator[StreamEvent]:
        if claim.outcome == ClaimOutcome.CLAIMED:
            stage = ExtractionStage(job, claim.token, self.repo, self.ocr, self.scraper, cancel)
            async for event in stage.run():
                yield event
            if stage.result is None:
                return
            extracted_text, images = stage.result.combined_text, stage.result.images
        else:
            current = await asyncio.to_thread(self.repo.get_job, job.id)
            if current is None:
                raise JobNotFoundError(f"Job not found: {job.id}")
            logger.info("Resuming job %s from stored extraction", job.id)
            extracted_text, images = current.extracted_text, current.extracted_images

        if cancel.cancelled:
            return

        yield StreamEvent.status(SUMMARIZING_STATUS)
        fan_in = DualGenerationFanIn(self.generator, GenerationRequest.from_job(job, extracted_text, images), cancel)
        async for event in fan_in.events():
            yield event
        if fan_in.result is None:
            return

        formatted = fan_in.result.formatted_text.strip()
        breadtext = fan_in.result.breadtext_text.strip()

        # Extraction stays cached, so a retry only re-runs generation.
        if not formatted or fan_in.result.formatted_error:
            await self.claims.release(job.id, claim.token)
            yield StreamEvent.error(GENERATION_FAILED_MESSAGE)
            yield StreamEvent.done()
            return

        if EMPTY_CONTENT_PHRASE in formatted:
            logger.info("Generation judged job %s unreadable; discarding extraction", job.id)
            await asyncio.to_thread(self.repo.discard_extraction, job.id)
            yield StreamEvent.error(formatted)
            yield StreamEvent.done()
            return

        if fan_in.result.breadtext_error or EMPTY_CONTENT_PHRASE in breadtext:
            breadtext = ""

        output_images = select_output_images(images, formatted, breadtext)
        saved = await asyncio.to_thread(self.repo.save_outputs, job.id, formatted, breadtext, output_images)
        if saved:
            logger.info("Saved outputs for job %s (%s image(s))", job.id, len(output_images))
        else:
            logger.info("Outputs for job %s were already saved by another request", job.id)
        yield StreamEvent.done()
