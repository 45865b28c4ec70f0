from __future__ import annotations

from typing import List, Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from elastic_document.processing import (
    CancellationToken,
    ExtractionState,
    JobNotFoundError,
    JobProcessor,
    JobRecord,
    JobRepository,
    PipelineConfig,
    SourceKind,
    SourceRecord,
    StreamTransport,
)
from elastic_document.processing.models import (
    COMPLEXITY_LEVELS,
    LANGUAGES,
    MAX_READING_MINUTES,
    MAX_SOURCES,
    MIN_READING_MINUTES,
    new_id,
    usage_window_start,
)
from elastic_document.processing.transport import SSE_HEADERS

from api.dependencies import get_config, get_current_user, get_processor, get_repo, get_transport

router = APIRouter(prefix="/jobs", tags=["jobs"])

PROCESS_ACTION = "process_document"
REPROCESS_ACTION = "reprocess_document"


class FileReference(BaseModel):
    file_name: Optional[str] = None
    file_url: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None


class CreateJobRequest(BaseModel):
    files: List[FileReference] = []
    urls: List[str] = []
    reading_minutes: int
    complexity: str
    language: str


class ReprocessRequest(BaseModel):
    reading_minutes: int
    complexity: str
    language: str


def _is_valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _validate_parameters(reading_minutes: int, complexity: str, language: str) -> None:
    if reading_minutes < MIN_READING_MINUTES or reading_minutes > MAX_READING_MINUTES:
        raise HTTPException(status_code=400, detail="Invalid reading time")
    if complexity not in COMPLEXITY_LEVELS:
        raise HTTPException(status_code=400, detail="Invalid complexity level")
    if language not in LANGUAGES:
        raise HTTPException(status_code=400, detail="Invalid language")


def _owned_job(repo: JobRepository, job_id: str, user_id: str) -> JobRecord:
    job = repo.get_job(job_id)
    if not job or job.owner_id != user_id:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return job


def _job_summary(job: JobRecord) -> dict:
    return {
        "id": job.id,
        "reading_minutes": job.reading_minutes,
        "complexity": job.complexity,
        "language": job.language,
        "extraction_state": job.extraction_state.value,
        "complete": job.is_complete,
        "formatted_output": job.formatted_output,
        "breadtext_output": job.breadtext_output,
        "output_images": job.output_images,
        "sources": [
            {
                "id": source.id,
                "kind": source.kind.value,
                "display_name": source.display_name,
                "source_url": source.source_url,
            }
            for source in job.sources
        ],
    }


@router.post("")
def create_job(
    body: CreateJobRequest,
    user_id: str = Depends(get_current_user),
    repo: JobRepository = Depends(get_repo),
    config: PipelineConfig = Depends(get_config),
):
    if not body.files and not body.urls:
        raise HTTPException(status_code=400, detail="No files or URLs provided")
    if len(body.files) + len(body.urls) > MAX_SOURCES:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_SOURCES} items allowed")
    _validate_parameters(body.reading_minutes, body.complexity, body.language)
    for url in body.urls:
        if not _is_valid_url(url):
            raise HTTPException(status_code=400, detail=f"Invalid URL: {url}")
    for file in body.files:
        if not file.file_name or not file.file_url or file.file_size is None:
            raise HTTPException(status_code=400, detail="Invalid file data")

    job_id = new_id()
    sources: List[SourceRecord] = []
    for file in body.files:
        sources.append(
            SourceRecord(
                id=new_id(),
                job_id=job_id,
                position=len(sources),
                kind=SourceKind.FILE,
                display_name=file.file_name[:500],
                file_location=file.file_url,
                file_type=(file.file_type or "application/octet-stream")[:100],
                file_size=file.file_size,
            )
        )
    for url in body.urls:
        sources.append(
            SourceRecord(
                id=new_id(),
                job_id=job_id,
                position=len(sources),
                kind=SourceKind.URL,
                display_name=url[:500],
                source_url=url,
                file_type="text/html",
            )
        )

    job = JobRecord(
        id=job_id,
        owner_id=user_id,
        reading_minutes=body.reading_minutes,
        complexity=body.complexity,
        language=body.language,
        sources=sources,
    )
    if not repo.save_job_within_limit(job, PROCESS_ACTION, config.usage_limit_per_day, usage_window_start()):
        raise HTTPException(
            status_code=429,
            detail=f"Daily limit of {config.usage_limit_per_day} summarized documents reached. Try again tomorrow.",
        )
    return {"job_id": job_id}


@router.post("/{job_id}/reprocess")
def reprocess_job(
    job_id: str,
    body: ReprocessRequest,
    user_id: str = Depends(get_current_user),
    repo: JobRepository = Depends(get_repo),
    config: PipelineConfig = Depends(get_config),
):
    _validate_parameters(body.reading_minutes, body.complexity, body.language)
    original = _owned_job(repo, job_id, user_id)

    new_job_id = new_id()
    extraction_done = original.extraction_state == ExtractionState.COMPLETE
    sources = [
        SourceRecord(
            id=new_id(),
            job_id=new_job_id,
            position=source.position,
            kind=source.kind,
            display_name=source.display_name,
            file_location=source.file_location,
            source_url=source.source_url,
            file_type=source.file_type,
            file_size=source.file_size,
        )
        for source in original.sources
    ]
    job = JobRecord(
        id=new_job_id,
        owner_id=user_id,
        reading_minutes=body.reading_minutes,
        complexity=body.complexity,
        language=body.language,
        sources=sources,
        extraction_state=ExtractionState.COMPLETE if extraction_done else ExtractionState.NOT_STARTED,
        extracted_text=original.extracted_text if extraction_done else "",
        extracted_images=list(original.extracted_images) if extraction_done else [],
    )
    if not repo.save_job_within_limit(job, REPROCESS_ACTION, config.usage_limit_per_day, usage_window_start()):
        raise HTTPException(status_code=429, detail=f"Daily limit of {config.usage_limit_per_day} reached. Try again tomorrow.")
    return {"job_id": new_job_id}


@router.get("/usage")
def get_usage(
    user_id: str = Depends(get_current_user),
    repo: JobRepository = Depends(get_repo),
    config: PipelineConfig = Depends(get_config),
):
    return {"used": repo.count_usage(user_id, usage_window_start()), "limit": config.usage_limit_per_day}


@router.get("/{job_id}")
def get_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    repo: JobRepository = Depends(get_repo),
):
    return _job_summary(_owned_job(repo, job_id, user_id))


@router.get("/{job_id}/stream")
async def stream_job(
    job_id: str,
    request: Request,
    user_id: str = Depends(get_current_user),
    processor: JobProcessor = Depends(get_processor),
    transport: StreamTransport = Depends(get_transport),
):
    try:
        job = await processor.load_job(job_id, user_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    cancel = CancellationToken()
    events = processor.process(job, cancel)
    return StreamingResponse(
        transport.stream(events, cancel, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
