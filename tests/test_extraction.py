import pytest

from elastic_document.processing import (
    CancellationToken,
    ClaimLostError,
    EmptyExtractionError,
    EventType,
    ExtractionStage,
    ExtractionState,
    OcrResult,
)
from elastic_document.processing.errors import OcrError, ScrapeError
from elastic_document.processing.extraction import (
    EXTRACTING_STATUS,
    FETCHING_STATUS,
    has_meaningful_content,
    source_separator,
)

from fakes import FakeOcr, FakeScraper, collect, make_job


def _claimed(repo, job):
    repo.save_job(job)
    return repo.try_claim(job.id).token


def test_separator_only_text_is_not_meaningful():
    assert not has_meaningful_content(source_separator("a.pdf") + "   " + source_separator("b.pdf"))
    assert has_meaningful_content(source_separator("a.pdf") + "Hello")


@pytest.mark.anyio
async def test_combines_sources_in_submission_order(repo):
    job = make_job(files=("/docs/a.pdf",), urls=("https://example.com/post",))
    token = _claimed(repo, job)
    ocr = FakeOcr(results={"/docs/a.pdf": OcrResult(markdown="File body", images=["/img/1.png"])})
    scraper = FakeScraper(pages={"https://example.com/post": "Web body"})
    stage = ExtractionStage(job, token, repo, ocr, scraper, CancellationToken())

    events = await collect(stage.run())

    assert [e.message for e in events] == [FETCHING_STATUS, EXTRACTING_STATUS]
    assert scraper.calls == ["https://example.com/post"]
    assert ocr.calls == ["/docs/a.pdf"]
    assert stage.result.combined_text == (
        source_separator("a.pdf") + "File body" + source_separator("post.html") + "Web body"
    )
    assert stage.result.images == ["/img/1.png"]

    stored = repo.get_job(job.id)
    assert stored.extraction_state == ExtractionState.COMPLETE
    assert stored.extracted_text == stage.result.combined_text
    assert stored.sources[1].file_location == "/blobs/post.html"


@pytest.mark.anyio
async def test_failed_source_is_reported_and_skipped(repo):
    job = make_job(files=("/docs/bad.pdf", "/docs/good.pdf"), urls=("https://example.com/down",))
    token = _claimed(repo, job)
    ocr = FakeOcr(failures={"/docs/bad.pdf": OcrError("unreadable")})
    scraper = FakeScraper(failures={"https://example.com/down": ScrapeError("503")})
    stage = ExtractionStage(job, token, repo, ocr, scraper, CancellationToken())

    events = await collect(stage.run())

    errors = [e.message for e in events if e.type == EventType.ERROR]
    assert errors == ["Failed to fetch https://example.com/down: 503", "OCR failed for bad.pdf: unreadable"]
    assert stage.result.combined_text == source_separator("good.pdf") + "Text of /docs/good.pdf"


@pytest.mark.anyio
async def test_empty_extraction_is_rejected_without_saving(repo):
    job = make_job()
    token = _claimed(repo, job)
    ocr = FakeOcr(results={"/docs/report.pdf": OcrResult(markdown="  \n ")})
    stage = ExtractionStage(job, token, repo, ocr, FakeScraper(), CancellationToken())

    with pytest.raises(EmptyExtractionError):
        await collect(stage.run())

    assert stage.result is None
    assert repo.get_job(job.id).extraction_state == ExtractionState.IN_PROGRESS


@pytest.mark.anyio
async def test_lost_claim_refuses_to_save(repo):
    job = make_job()
    _claimed(repo, job)
    stage = ExtractionStage(job, "not-the-holder", repo, FakeOcr(), FakeScraper(), CancellationToken())

    with pytest.raises(ClaimLostError):
        await collect(stage.run())

    assert repo.get_job(job.id).extracted_text == ""


@pytest.mark.anyio
async def test_cancelled_extraction_writes_nothing(repo):
    job = make_job(files=("/docs/a.pdf", "/docs/b.pdf"))
    token = _claimed(repo, job)
    cancel = CancellationToken()
    ocr = FakeOcr()
    stage = ExtractionStage(job, token, repo, ocr, FakeScraper(), cancel)

    events = []
    async for event in stage.run():
        events.append(event)
        cancel.cancel("client disconnected")

    assert ocr.calls == []
    assert stage.result is None
    stored = repo.get_job(job.id)
    assert stored.extraction_state == ExtractionState.IN_PROGRESS
    assert stored.extracted_text == ""
