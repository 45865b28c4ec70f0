from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from elastic_document.processing import (
    ConfigurationError,
    ExtractionState,
    PipelineConfig,
    SqlAlchemyJobRepository,
    run_claim_reaper,
)
from elastic_document.processing.repository import JobModel

from fakes import make_job


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///tmp/x.db")
    monkeypatch.setenv("OCR_BACKEND", " HuggingFace ")
    monkeypatch.setenv("PERFORM_OCR", "false")
    monkeypatch.setenv("HEARTBEAT_SECONDS", "5")
    monkeypatch.setenv("CLAIM_TTL_SECONDS", "60")

    config = PipelineConfig.from_env()

    assert config.database_url == "sqlite+pysqlite:///tmp/x.db"
    assert config.ocr_backend == "huggingface"
    assert config.perform_ocr is False
    assert config.heartbeat_seconds == 5.0
    assert config.claim_ttl_seconds == 60
    assert config.job_timeout_seconds == 600.0


def test_defaults_are_valid(monkeypatch):
    for name in ("OCR_BACKEND", "HUGGINGFACE_OCR_ENDPOINT", "HUGGINGFACE_API_KEY", "CLAIM_TTL_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    assert PipelineConfig.from_env().validate().ocr_backend == "docling"


@pytest.mark.parametrize(
    "config",
    [
        PipelineConfig(ocr_backend="tesseract"),
        PipelineConfig(ocr_backend="huggingface", huggingface_ocr_endpoint="https://ocr.example"),
        PipelineConfig(heartbeat_seconds=0),
        PipelineConfig(claim_ttl_seconds=-1),
    ],
)
def test_invalid_config_is_rejected(config):
    with pytest.raises(ConfigurationError):
        config.validate()


def test_claim_reaper_task_resets_stale_claims(tmp_path):
    config = PipelineConfig(database_url=f"sqlite+pysqlite:///{tmp_path / 'jobs.db'}", claim_ttl_seconds=60)
    repo = SqlAlchemyJobRepository(config.database_url)
    repo.save_job(make_job("stale"))
    repo.save_job(make_job("fresh"))
    repo.try_claim("stale")
    repo.try_claim("fresh")
    with repo.SessionLocal() as session:
        session.execute(
            update(JobModel).where(JobModel.id == "stale").values(claimed_at=datetime.utcnow() - timedelta(hours=1))
        )
        session.commit()

    assert run_claim_reaper(config) == 1
    assert repo.get_job("stale").extraction_state == ExtractionState.NOT_STARTED
    assert repo.get_job("fresh").extraction_state == ExtractionState.IN_PROGRESS
