"""
Job-processing subsystem exports.
"""

from .cancellation import CancellationToken
from .claims import ClaimCoordinator
from .config import PipelineConfig, build_processor, build_repository, build_transport
from .errors import (
    ClaimLostError,
    ConfigurationError,
    EmptyExtractionError,
    GenerationError,
    JobNotFoundError,
    OcrError,
    ProcessingError,
    ScrapeError,
)
from .extraction import ExtractionStage
from .fanin import DualGenerationFanIn, FanInResult
from .generation import AnthropicGenerationService, GenerationService
from .job_queue import RQJobQueue, run_claim_reaper
from .models import (
    ClaimOutcome,
    ClaimResult,
    EventType,
    ExtractionState,
    GenerationRequest,
    JobRecord,
    OcrResult,
    OutputVariant,
    ScrapeResult,
    SourceKind,
    SourceRecord,
    StreamEvent,
)
from .ocr import DoclingOcrService, HuggingFaceOcrService, OcrService
from .pipeline import JobProcessor
from .repository import InMemoryJobRepository, JobRepository, SqlAlchemyJobRepository
from .scraper import ReaderUrlScraper, UrlScraper
from .storage import LocalBlobStorage, StoragePaths
from .transport import StreamTransport, encode_event

__all__ = [
    "AnthropicGenerationService",
    "CancellationToken",
    "ClaimCoordinator",
    "ClaimLostError",
    "ClaimOutcome",
    "ClaimResult",
    "ConfigurationError",
    "DoclingOcrService",
    "DualGenerationFanIn",
    "EmptyExtractionError",
    "EventType",
    "ExtractionStage",
    "ExtractionState",
    "FanInResult",
    "GenerationError",
    "GenerationRequest",
    "GenerationService",
    "HuggingFaceOcrService",
    "InMemoryJobRepository",
    "JobNotFoundError",
    "JobProcessor",
    "JobRecord",
    "JobRepository",
    "LocalBlobStorage",
    "OcrError",
    "OcrResult",
    "OcrService",
    "OutputVariant",
    "PipelineConfig",
    "ProcessingError",
    "RQJobQueue",
    "ReaderUrlScraper",
    "ScrapeError",
    "ScrapeResult",
    "SourceKind",
    "SourceRecord",
    "SqlAlchemyJobRepository",
    "StoragePaths",
    "StreamEvent",
    "StreamTransport",
    "UrlScraper",
    "build_processor",
    "build_repository",
    "build_transport",
    "encode_event",
    "run_claim_reaper",
]
