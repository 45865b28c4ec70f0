from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException

from elastic_document.processing import (
    JobProcessor,
    JobRepository,
    PipelineConfig,
    StreamTransport,
    build_processor,
    build_repository,
    build_transport,
)


@lru_cache(maxsize=1)
def get_config() -> PipelineConfig:
    return PipelineConfig.from_env().validate()


@lru_cache(maxsize=1)
def get_repo() -> JobRepository:
    return build_repository(get_config())


@lru_cache(maxsize=1)
def get_processor() -> JobProcessor:
    return build_processor(get_config(), get_repo())


@lru_cache(maxsize=1)
def get_transport() -> StreamTransport:
    return build_transport(get_config())


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """
    Owner identity for the request. Authentication happens upstream; the
    proxy in front of the API forwards the verified user id in this header.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()
