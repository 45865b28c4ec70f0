"""
Example: run one job end to end on local files and/or URLs against SQLite,
printing the event stream as it would be sent to a browser.

Usage:
    python3 processing_demo.py --file /path/to/report.pdf --url https://example.com/article --minutes 3
"""

import argparse
import asyncio
import logging
from pathlib import Path

from elastic_document.processing import (
    CancellationToken,
    JobRecord,
    PipelineConfig,
    SourceKind,
    SourceRecord,
    SqlAlchemyJobRepository,
    build_processor,
    build_transport,
)
from elastic_document.processing.models import COMPLEXITY_LEVELS, new_id


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_job(args) -> JobRecord:
    job_id = new_id()
    sources = []
    for path in args.file:
        sources.append(
            SourceRecord(
                id=new_id(),
                job_id=job_id,
                position=len(sources),
                kind=SourceKind.FILE,
                display_name=path.name,
                file_location=str(path.resolve()),
                file_size=path.stat().st_size,
            )
        )
    for url in args.url:
        sources.append(
            SourceRecord(
                id=new_id(),
                job_id=job_id,
                position=len(sources),
                kind=SourceKind.URL,
                display_name=url,
                source_url=url,
                file_type="text/html",
            )
        )
    return JobRecord(
        id=job_id,
        owner_id="local-user",
        reading_minutes=args.minutes,
        complexity=args.complexity,
        language=args.language,
        sources=sources,
    )


async def run(args) -> None:
    config = PipelineConfig.from_env()
    config.database_url = f"sqlite+pysqlite:///{args.db}"
    config.storage_root = str(args.storage_root)
    if args.no_ocr:
        config.perform_ocr = False

    args.db.parent.mkdir(parents=True, exist_ok=True)
    repo = SqlAlchemyJobRepository(config.database_url)
    processor = build_processor(config, repo)
    transport = build_transport(config)

    job = build_job(args)
    repo.save_job(job)
    print(f"Starting job {job.id} with {len(job.sources)} source(s)")

    cancel = CancellationToken()
    async for frame in transport.stream(processor.process(job, cancel), cancel):
        print(frame, end="", flush=True)

    final_job = repo.get_job(job.id)
    print(f"Job finished with extraction_state={final_job.extraction_state.value}, complete={final_job.is_complete}")


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--file", action="append", default=[], type=Path, help="Local document (repeatable)")
    parser.add_argument("--url", action="append", default=[], help="Web page URL (repeatable)")
    parser.add_argument("--minutes", default=3, type=int, help="Target reading time in minutes")
    parser.add_argument("--complexity", default="simple", choices=COMPLEXITY_LEVELS, help="Language complexity")
    parser.add_argument("--language", default="English", help="Output language")
    parser.add_argument("--db", default=Path("./data/elastic_document.db"), type=Path, help="SQLite DB path")
    parser.add_argument("--storage-root", default=Path("./data"), type=Path, help="Storage root for blobs")
    parser.add_argument("--no-ocr", action="store_true", help="Disable OCR in the Docling pipeline")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    if not args.file and not args.url:
        parser.error("at least one --file or --url is required")
    for path in args.file:
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")

    setup_logging(args.verbose)
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
