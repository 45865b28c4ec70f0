from __future__ import annotations

import json
import threading
from copy import deepcopy
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import Column, DateTime, Enum, Integer, String, Text, create_engine, func, select, update
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import JobNotFoundError
from .models import (
    ClaimOutcome,
    ClaimResult,
    ExtractionState,
    JobRecord,
    SourceKind,
    SourceRecord,
    new_id,
)

Base = declarative_base()


class JobModel(Base):
    __tablename__ = "jobs"
    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True, nullable=False)
    reading_minutes = Column(Integer, nullable=False)
    complexity = Column(String, nullable=False)
    language = Column(String, nullable=False)
    extraction_state = Column(Enum(ExtractionState), nullable=False, default=ExtractionState.NOT_STARTED)
    extracted_text = Column(Text, nullable=False, default="")
    extracted_images = Column(Text, nullable=False, default="[]")
    formatted_output = Column(Text, nullable=False, default="")
    breadtext_output = Column(Text, nullable=False, default="")
    output_images = Column(Text, nullable=False, default="[]")
    claim_token = Column(String)
    claimed_at = Column(DateTime)
    created_at = Column(DateTime)


class SourceModel(Base):
    __tablename__ = "job_sources"
    id = Column(String, primary_key=True)
    job_id = Column(String, index=True, nullable=False)
    position = Column(Integer, nullable=False)
    kind = Column(Enum(SourceKind), nullable=False)
    display_name = Column(String, nullable=False)
    file_location = Column(String, nullable=False, default="")
    source_url = Column(String)
    file_type = Column(String)
    file_size = Column(Integer)
    created_at = Column(DateTime)


class UsageModel(Base):
    __tablename__ = "usage_log"
    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True, nullable=False)
    action = Column(String, nullable=False)
    created_at = Column(DateTime, index=True, nullable=False)


class JobRepository:
    """
    Persistence boundary for jobs. Every mutation is scoped to one job id and
    is either a conditional single-row update or a guarded field-set update,
    so concurrent request handlers only coordinate through the row itself.
    """

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        raise NotImplementedError

    def save_job(self, job: JobRecord) -> None:
        raise NotImplementedError

    def update_source(self, source_id: str, file_location: str, display_name: str) -> None:
        raise NotImplementedError

    # Usage accounting
    def count_usage(self, owner_id: str, since: datetime) -> int:
        raise NotImplementedError

    def save_job_within_limit(self, job: JobRecord, action: str, limit: int, since: datetime) -> bool:
        """
        Save `job` and log one `action` for its owner, but only while the
        owner has fewer than `limit` actions logged since `since`. The check
        and both writes happen in one transaction.
        """
        raise NotImplementedError

    # Claim operations
    def try_claim(self, job_id: str) -> ClaimResult:
        """
        Move the job from NOT_STARTED to IN_PROGRESS only if it is still
        NOT_STARTED. Raises JobNotFoundError for unknown ids.
        """
        raise NotImplementedError

    def release_claim(self, job_id: str, token: str) -> bool:
        """
        Reset IN_PROGRESS back to NOT_STARTED, but only while the claim
        identified by `token` is still the one held.
        """
        raise NotImplementedError

    def reap_stale_claims(self, claimed_before: datetime) -> int:
        raise NotImplementedError

    # Stage results
    def save_extraction(self, job_id: str, token: str, combined_text: str, images: List[str]) -> bool:
        raise NotImplementedError

    def discard_extraction(self, job_id: str) -> bool:
        raise NotImplementedError

    def save_outputs(self, job_id: str, formatted_output: str, breadtext_output: str, output_images: List[str]) -> bool:
        raise NotImplementedError


class InMemoryJobRepository(JobRepository):
    """
    In-memory store for local runs and tests. A single lock stands in for the
    database's row-level atomicity so conditional updates behave the same way
    when called from several threads.
    """

    def __init__(self):
        self.jobs: Dict[str, JobRecord] = {}
        self.usage: List[Tuple[str, str, datetime]] = []
        self.write_count = 0
        self._lock = threading.Lock()

    def _clone(self, obj):
        return deepcopy(obj)

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            job = self.jobs.get(job_id)
            return self._clone(job) if job else None

    def save_job(self, job: JobRecord) -> None:
        with self._lock:
            self.jobs[job.id] = self._clone(job)
            self.write_count += 1

    def update_source(self, source_id: str, file_location: str, display_name: str) -> None:
        with self._lock:
            for job in self.jobs.values():
                for source in job.sources:
                    if source.id == source_id:
                        source.file_location = file_location
                        source.display_name = display_name
                        self.write_count += 1
                        return

    def count_usage(self, owner_id: str, since: datetime) -> int:
        with self._lock:
            return self._count_usage(owner_id, since)

    def save_job_within_limit(self, job: JobRecord, action: str, limit: int, since: datetime) -> bool:
        with self._lock:
            if self._count_usage(job.owner_id, since) >= limit:
                return False
            self.jobs[job.id] = self._clone(job)
            self.usage.append((job.owner_id, action, datetime.utcnow()))
            self.write_count += 2
            return True

    def _count_usage(self, owner_id: str, since: datetime) -> int:
        return sum(1 for owner, _action, created_at in self.usage if owner == owner_id and created_at >= since)

    def try_claim(self, job_id: str) -> ClaimResult:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.extraction_state == ExtractionState.NOT_STARTED:
                token = new_id()
                job.extraction_state = ExtractionState.IN_PROGRESS
                job.claim_token = token
                job.claimed_at = datetime.utcnow()
                self.write_count += 1
                return ClaimResult(ClaimOutcome.CLAIMED, token)
            if job.extraction_state == ExtractionState.IN_PROGRESS:
                return ClaimResult(ClaimOutcome.ALREADY_IN_PROGRESS)
            return ClaimResult(ClaimOutcome.ALREADY_COMPLETE)

    def release_claim(self, job_id: str, token: str) -> bool:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job.extraction_state != ExtractionState.IN_PROGRESS or job.claim_token != token:
                return False
            self._reset(job)
            self.write_count += 1
            return True

    def reap_stale_claims(self, claimed_before: datetime) -> int:
        reaped = 0
        with self._lock:
            for job in self.jobs.values():
                if job.extraction_state != ExtractionState.IN_PROGRESS:
                    continue
                if job.claimed_at is None or job.claimed_at < claimed_before:
                    self._reset(job)
                    reaped += 1
            self.write_count += reaped
        return reaped

    def save_extraction(self, job_id: str, token: str, combined_text: str, images: List[str]) -> bool:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job.extraction_state != ExtractionState.IN_PROGRESS or job.claim_token != token:
                return False
            job.extraction_state = ExtractionState.COMPLETE
            job.extracted_text = combined_text
            job.extracted_images = list(images)
            job.claim_token = None
            job.claimed_at = None
            self.write_count += 1
            return True

    def discard_extraction(self, job_id: str) -> bool:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job.extraction_state != ExtractionState.COMPLETE:
                return False
            self._reset(job)
            self.write_count += 1
            return True

    def save_outputs(self, job_id: str, formatted_output: str, breadtext_output: str, output_images: List[str]) -> bool:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job.formatted_output:
                return False
            job.formatted_output = formatted_output
            job.breadtext_output = breadtext_output
            job.output_images = list(output_images)
            self.write_count += 1
            return True

    def _reset(self, job: JobRecord) -> None:
        job.extraction_state = ExtractionState.NOT_STARTED
        job.extracted_text = ""
        job.extracted_images = []
        job.claim_token = None
        job.claimed_at = None


class SqlAlchemyJobRepository(JobRepository):
    """
    SQL-backed repository using SQLAlchemy. Works with SQLite/Postgres URLs.
    """

    def __init__(self, database_url: str):
        self.engine = create_engine(database_url, future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def _session(self) -> Session:
        return self.SessionLocal()

    # region Job operations
    def get_job(self, job_id: str) -> Optional[JobRecord]:
        with self._session() as session:
            model = session.get(JobModel, job_id)
            if not model:
                return None
            stmt = select(SourceModel).where(SourceModel.job_id == job_id).order_by(SourceModel.position)
            sources = [self._to_source(m) for m in session.execute(stmt).scalars().all()]
            return JobRecord(
                id=model.id,
                owner_id=model.owner_id,
                reading_minutes=model.reading_minutes,
                complexity=model.complexity,
                language=model.language,
                sources=sources,
                extraction_state=model.extraction_state,
                extracted_text=model.extracted_text or "",
                extracted_images=json.loads(model.extracted_images or "[]"),
                formatted_output=model.formatted_output or "",
                breadtext_output=model.breadtext_output or "",
                output_images=json.loads(model.output_images or "[]"),
                claim_token=model.claim_token,
                claimed_at=model.claimed_at,
                created_at=model.created_at,
            )

    def save_job(self, job: JobRecord) -> None:
        with self._session() as session:
            self._merge_job(session, job)
            session.commit()

    def count_usage(self, owner_id: str, since: datetime) -> int:
        with self._session() as session:
            return self._count_usage(session, owner_id, since)

    def save_job_within_limit(self, job: JobRecord, action: str, limit: int, since: datetime) -> bool:
        with self._session() as session, session.begin():
            if self._count_usage(session, job.owner_id, since) >= limit:
                return False
            self._merge_job(session, job)
            session.add(UsageModel(id=new_id(), owner_id=job.owner_id, action=action, created_at=datetime.utcnow()))
            return True

    def update_source(self, source_id: str, file_location: str, display_name: str) -> None:
        with self._session() as session:
            stmt = (
                update(SourceModel)
                .where(SourceModel.id == source_id)
                .values(file_location=file_location, display_name=display_name)
            )
            session.execute(stmt)
            session.commit()

    # endregion

    # region Claim operations
    def try_claim(self, job_id: str) -> ClaimResult:
        token = new_id()
        with self._session() as session:
            stmt = (
                update(JobModel)
                .where(JobModel.id == job_id, JobModel.extraction_state == ExtractionState.NOT_STARTED)
                .values(extraction_state=ExtractionState.IN_PROGRESS, claim_token=token, claimed_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            session.commit()
            if result.rowcount == 1:
                return ClaimResult(ClaimOutcome.CLAIMED, token)

            state = session.execute(select(JobModel.extraction_state).where(JobModel.id == job_id)).scalar_one_or_none()
            if state is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if state == ExtractionState.IN_PROGRESS:
                return ClaimResult(ClaimOutcome.ALREADY_IN_PROGRESS)
            # NOT_STARTED here means the row was released between our update and read.
            if state == ExtractionState.NOT_STARTED:
                return ClaimResult(ClaimOutcome.ALREADY_IN_PROGRESS)
            return ClaimResult(ClaimOutcome.ALREADY_COMPLETE)

    def release_claim(self, job_id: str, token: str) -> bool:
        with self._session() as session:
            stmt = (
                update(JobModel)
                .where(
                    JobModel.id == job_id,
                    JobModel.extraction_state == ExtractionState.IN_PROGRESS,
                    JobModel.claim_token == token,
                )
                .values(**self._reset_values())
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def reap_stale_claims(self, claimed_before: datetime) -> int:
        with self._session() as session:
            stmt = (
                update(JobModel)
                .where(
                    JobModel.extraction_state == ExtractionState.IN_PROGRESS,
                    (JobModel.claimed_at < claimed_before) | (JobModel.claimed_at.is_(None)),
                )
                .values(**self._reset_values())
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount or 0

    # endregion

    # region Stage results
    def save_extraction(self, job_id: str, token: str, combined_text: str, images: List[str]) -> bool:
        with self._session() as session:
            stmt = (
                update(JobModel)
                .where(
                    JobModel.id == job_id,
                    JobModel.extraction_state == ExtractionState.IN_PROGRESS,
                    JobModel.claim_token == token,
                )
                .values(
                    extraction_state=ExtractionState.COMPLETE,
                    extracted_text=combined_text,
                    extracted_images=json.dumps(list(images)),
                    claim_token=None,
                    claimed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def discard_extraction(self, job_id: str) -> bool:
        with self._session() as session:
            stmt = (
                update(JobModel)
                .where(JobModel.id == job_id, JobModel.extraction_state == ExtractionState.COMPLETE)
                .values(**self._reset_values())
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def save_outputs(self, job_id: str, formatted_output: str, breadtext_output: str, output_images: List[str]) -> bool:
        with self._session() as session:
            stmt = (
                update(JobModel)
                .where(JobModel.id == job_id, JobModel.formatted_output == "")
                .values(
                    formatted_output=formatted_output,
                    breadtext_output=breadtext_output,
                    output_images=json.dumps(list(output_images)),
                )
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    # endregion

    def _merge_job(self, session: Session, job: JobRecord) -> None:
        session.merge(
            JobModel(
                id=job.id,
                owner_id=job.owner_id,
                reading_minutes=job.reading_minutes,
                complexity=job.complexity,
                language=job.language,
                extraction_state=job.extraction_state,
                extracted_text=job.extracted_text,
                extracted_images=json.dumps(job.extracted_images),
                formatted_output=job.formatted_output,
                breadtext_output=job.breadtext_output,
                output_images=json.dumps(job.output_images),
                claim_token=job.claim_token,
                claimed_at=job.claimed_at,
                created_at=job.created_at,
            )
        )
        for source in job.sources:
            session.merge(
                SourceModel(
                    id=source.id,
                    job_id=job.id,
                    position=source.position,
                    kind=source.kind,
                    display_name=source.display_name,
                    file_location=source.file_location,
                    source_url=source.source_url,
                    file_type=source.file_type,
                    file_size=source.file_size,
                    created_at=source.created_at,
                )
            )

    def _count_usage(self, session: Session, owner_id: str, since: datetime) -> int:
        stmt = select(func.count()).select_from(UsageModel).where(
            UsageModel.owner_id == owner_id, UsageModel.created_at >= since
        )
        return session.execute(stmt).scalar_one()

    def _reset_values(self) -> dict:
        return {
            "extraction_state": ExtractionState.NOT_STARTED,
            "extracted_text": "",
            "extracted_images": "[]",
            "claim_token": None,
            "claimed_at": None,
        }

    def _to_source(self, model: SourceModel) -> SourceRecord:
        return SourceRecord(
            id=model.id,
            job_id=model.job_id,
            position=int(model.position or 0),
            kind=model.kind,
            display_name=model.display_name,
            file_location=model.file_location or "",
            source_url=model.source_url,
            file_type=model.file_type or "application/octet-stream",
            file_size=int(model.file_size or 0),
            created_at=model.created_at,
        )
