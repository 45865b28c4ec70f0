from __future__ import annotations

import asyncio
import logging
import re
from typing import AsyncIterator, Dict, List, Optional

from .cancellation import CancellationToken
from .errors import ClaimLostError, EmptyExtractionError
from .models import ExtractionResult, JobRecord, SourceKind, StreamEvent
from .ocr import OcrService
from .repository import JobRepository
from .scraper import UrlScraper

logger = logging.getLogger(__name__)

FETCHING_STATUS = "Fetching web pages..."
EXTRACTING_STATUS = "Extracting text and images..."

_SEPARATOR_PATTERN = re.compile(r"---\s*.+?\s*---")


def source_separator(display_name: str) -> str:
    return f"\n\n--- {display_name} ---\n\n"


def has_meaningful_content(combined_text: str) -> bool:
    return bool(_SEPARATOR_PATTERN.sub("", combined_text).strip())


class ExtractionStage:
    """
    Turns a claimed job's sources into one combined markdown text plus the
    image references found along the way.

    URL sources are scraped first (their markdown needs no OCR), then every
    source is visited in submission order and appended behind a separator
    naming it. A failing source is reported and skipped. The combined result
    is persisted under the caller's claim before `run` finishes, after which
    `result` is set.
    """

    def __init__(
        self,
        job: JobRecord,
        claim_token: str,
        repository: JobRepository,
        ocr: OcrService,
        scraper: UrlScraper,
        cancel: CancellationToken,
    ):
        self.job = job
        self.claim_token = claim_token
        self.repo = repository
        self.ocr = ocr
        self.scraper = scraper
        self.cancel = cancel
        self.result: Optional[ExtractionResult] = None

    async def run(self) -> AsyncIterator[StreamEvent]:
        scraped: Dict[str, str] = {}
        url_sources = [s for s in self.job.sources if s.kind == SourceKind.URL]
        if url_sources:
            yield StreamEvent.status(FETCHING_STATUS)
            for source in url_sources:
                if self.cancel.cancelled:
                    return
                if not source.source_url:
                    continue
                try:
                    page = await self.scraper.scrape(source.source_url, self.job.owner_id)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Scrape failed for job %s source %s: %s", self.job.id, source.source_url, exc)
                    yield StreamEvent.error(f"Failed to fetch {source.source_url}: {exc}")
                    continue
                await asyncio.to_thread(self.repo.update_source, source.id, page.stored_location, page.display_name)
                source.file_location = page.stored_location
                source.display_name = page.display_name
                scraped[source.id] = page.markdown

        if self.cancel.cancelled:
            return

        yield StreamEvent.status(EXTRACTING_STATUS)
        parts: List[str] = []
        images: List[str] = []
        for source in self.job.sources:
            if self.cancel.cancelled:
                return
            if source.kind == SourceKind.URL:
                markdown = scraped.get(source.id)
                if markdown:
                    parts.append(source_separator(source.display_name) + markdown)
                continue

            if not source.file_location:
                continue
            try:
                ocr_result = await self.ocr.extract(source.file_location, self.job.owner_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("OCR failed for job %s source %s: %s", self.job.id, source.display_name, exc)
                yield StreamEvent.error(f"OCR failed for {source.display_name}: {exc}")
                continue
            parts.append(source_separator(source.display_name) + ocr_result.markdown)
            images.extend(ocr_result.images)

        combined_text = "".join(parts)
        if not has_meaningful_content(combined_text):
            raise EmptyExtractionError()

        saved = await asyncio.to_thread(self.repo.save_extraction, self.job.id, self.claim_token, combined_text, images)
        if not saved:
            raise ClaimLostError(f"Claim on job {self.job.id} was lost before extraction could be saved")

        logger.info(
            "Extracted %s chars and %s image(s) from %s source(s) for job %s",
            len(combined_text),
            len(images),
            len(self.job.sources),
            self.job.id,
        )
        self.result = ExtractionResult(combined_text=combined_text, images=images)
