from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .claims import ClaimCoordinator
from .errors import ConfigurationError
from .generation import DEFAULT_MAX_TOKENS, DEFAULT_MODEL, AnthropicGenerationService
from .models import USAGE_LIMIT_PER_DAY
from .ocr import DoclingOcrService, HuggingFaceOcrService, OcrService
from .pipeline import JobProcessor
from .repository import JobRepository, SqlAlchemyJobRepository
from .scraper import ReaderUrlScraper
from .storage import LocalBlobStorage, StoragePaths
from .transport import DEFAULT_HEARTBEAT_SECONDS, DEFAULT_TIMEOUT_SECONDS, StreamTransport

OCR_BACKENDS = ("docling", "huggingface")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PipelineConfig:
    database_url: str = "sqlite+pysqlite:///./data/elastic_document.db"
    storage_root: str = "./data"
    public_base_url: str = ""
    redis_url: str = "redis://localhost:6379/0"
    anthropic_model: str = DEFAULT_MODEL
    generation_max_tokens: int = DEFAULT_MAX_TOKENS
    ocr_backend: str = "docling"
    huggingface_ocr_endpoint: str = ""
    huggingface_api_key: str = ""
    perform_ocr: bool = True
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    job_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    claim_ttl_seconds: int = 900
    usage_limit_per_day: int = USAGE_LIMIT_PER_DAY

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            storage_root=os.getenv("STORAGE_ROOT", cls.storage_root),
            public_base_url=os.getenv("PUBLIC_BASE_URL", cls.public_base_url),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            anthropic_model=os.getenv("ANTHROPIC_MODEL", cls.anthropic_model),
            generation_max_tokens=int(os.getenv("GENERATION_MAX_TOKENS", str(cls.generation_max_tokens))),
            ocr_backend=os.getenv("OCR_BACKEND", cls.ocr_backend).strip().lower(),
            huggingface_ocr_endpoint=os.getenv("HUGGINGFACE_OCR_ENDPOINT", cls.huggingface_ocr_endpoint),
            huggingface_api_key=os.getenv("HUGGINGFACE_API_KEY", cls.huggingface_api_key),
            perform_ocr=_env_bool("PERFORM_OCR", cls.perform_ocr),
            heartbeat_seconds=float(os.getenv("HEARTBEAT_SECONDS", str(cls.heartbeat_seconds))),
            job_timeout_seconds=float(os.getenv("JOB_TIMEOUT_SECONDS", str(cls.job_timeout_seconds))),
            claim_ttl_seconds=int(os.getenv("CLAIM_TTL_SECONDS", str(cls.claim_ttl_seconds))),
            usage_limit_per_day=int(os.getenv("USAGE_LIMIT_PER_DAY", str(cls.usage_limit_per_day))),
        )

    def validate(self) -> "PipelineConfig":
        if self.ocr_backend not in OCR_BACKENDS:
            raise ConfigurationError(f"Unknown OCR backend: {self.ocr_backend}")
        if self.ocr_backend == "huggingface" and not (self.huggingface_ocr_endpoint and self.huggingface_api_key):
            raise ConfigurationError("HUGGINGFACE_OCR_ENDPOINT and HUGGINGFACE_API_KEY are required for the huggingface backend")
        if self.heartbeat_seconds <= 0 or self.job_timeout_seconds <= 0:
            raise ConfigurationError("Heartbeat and job timeout must be positive")
        if self.claim_ttl_seconds <= 0:
            raise ConfigurationError("CLAIM_TTL_SECONDS must be positive")
        if self.usage_limit_per_day <= 0:
            raise ConfigurationError("USAGE_LIMIT_PER_DAY must be positive")
        return self

    def storage_paths(self) -> StoragePaths:
        return StoragePaths(Path(self.storage_root), public_base_url=self.public_base_url)


def build_repository(config: PipelineConfig) -> JobRepository:
    return SqlAlchemyJobRepository(config.database_url)


def build_ocr_service(config: PipelineConfig, storage: LocalBlobStorage) -> OcrService:
    if config.ocr_backend == "huggingface":
        return HuggingFaceOcrService(config.huggingface_ocr_endpoint, config.huggingface_api_key)
    return DoclingOcrService(storage, perform_ocr=config.perform_ocr)


def build_processor(config: PipelineConfig, repository: JobRepository) -> JobProcessor:
    """
    Wire the production collaborators for one process. The repository is
    passed in so the API can share a single engine between routes and runs.
    """
    config.validate()
    paths = config.storage_paths()
    storage = LocalBlobStorage(paths)
    return JobProcessor(
        repository=repository,
        claims=ClaimCoordinator(repository, claim_ttl_seconds=config.claim_ttl_seconds),
        ocr=build_ocr_service(config, storage),
        scraper=ReaderUrlScraper(storage, paths),
        generator=AnthropicGenerationService(model=config.anthropic_model, max_tokens=config.generation_max_tokens),
    )


def build_transport(config: PipelineConfig) -> StreamTransport:
    return StreamTransport(heartbeat_seconds=config.heartbeat_seconds, timeout_seconds=config.job_timeout_seconds)
