"""
Job bookkeeping for background assignment runs: a SQLAlchemy implementation
(Postgres in production, SQLite in tests) and an in-memory one.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Protocol

from sqlalchemy import JSON, Column, Float, String, Text, create_engine, select
from sqlalchemy.orm import Session, declarative_base, sessionmaker


class JobStatus(str, Enum):
    WAITING = "WAITING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class DbClient(Protocol):
    """Interface for job storage."""

    def create_job(self, kind: str, params: Optional[dict] = None) -> "JobRecord":
        ...

    def get_job(self, job_id: str) -> Optional["JobRecord"]:
        ...

    def list_jobs(self, limit: int = 20) -> list["JobRecord"]:
        ...

    def claim_job(self, job_id: str) -> Optional["JobRecord"]:
        ...

    def claim_next_waiting_job(self) -> Optional["JobRecord"]:
        ...

    def update_job_progress(
        self,
        job_id: str,
        *,
        status: Optional[JobStatus] = None,
        stage: Optional[str] = None,
        progress_percent: Optional[float] = None,
    ) -> None:
        ...

    def save_job_result(self, job_id: str, result: Optional[dict]) -> None:
        ...

    def save_job_error(self, job_id: str, error: str) -> None:
        ...

    def requeue_stale_locks(self, lock_timeout_seconds: float = 600) -> int:
        ...


@dataclass
class JobRecord:
    job_id: str
    kind: str
    status: JobStatus
    stage: str = "WAITING"
    progress_percent: float = 0.0
    params: dict = field(default_factory=dict)
    result: Optional[dict] = None
    error: Optional[str] = None
    locked_at: Optional[float] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "status": self.status.value,
            "stage": self.stage,
            "progress_percent": self.progress_percent,
            "params": self.params,
            "error": self.error,
            "has_result": self.result is not None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class InMemoryDbClient:
    """Dict-backed job store for development and tests."""

    def __init__(self):
        self.jobs: Dict[str, JobRecord] = {}

    def reset(self) -> None:
        self.jobs.clear()

    def create_job(self, kind: str, params: Optional[dict] = None) -> JobRecord:
        record = JobRecord(
            job_id=uuid.uuid4().hex,
            kind=kind,
            status=JobStatus.WAITING,
            params=dict(params or {}),
        )
        self.jobs[record.job_id] = record
        return record

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        return self.jobs.get(job_id)

    def list_jobs(self, limit: int = 20) -> list[JobRecord]:
        jobs = sorted(self.jobs.values(), key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    def _claim(self, job: JobRecord) -> JobRecord:
        job.status = JobStatus.RUNNING
        job.stage = "CLAIMED"
        job.locked_at = time.time()
        job.updated_at = job.locked_at
        return job

    def claim_job(self, job_id: str) -> Optional[JobRecord]:
        job = self.jobs.get(job_id)
        if not job or job.status != JobStatus.WAITING:
            return None
        return self._claim(job)

    def claim_next_waiting_job(self) -> Optional[JobRecord]:
        for job in self.jobs.values():
            if job.status == JobStatus.WAITING:
                return self._claim(job)
        return None

    def update_job_progress(
        self,
        job_id: str,
        *,
        status: Optional[JobStatus] = None,
        stage: Optional[str] = None,
        progress_percent: Optional[float] = None,
    ) -> None:
        job = self.jobs.get(job_id)
        if not job:
            return
        if status:
            job.status = status
        if stage:
            job.stage = stage
        if progress_percent is not None:
            job.progress_percent = progress_percent
        job.updated_at = time.time()

    def save_job_result(self, job_id: str, result: Optional[dict]) -> None:
        job = self.jobs.get(job_id)
        if job:
            job.result = result
            job.updated_at = time.time()

    def save_job_error(self, job_id: str, error: str) -> None:
        job = self.jobs.get(job_id)
        if job:
            job.error = error
            job.updated_at = time.time()

    def requeue_stale_locks(self, lock_timeout_seconds: float = 600) -> int:
        now = time.time()
        requeued = 0
        for job in self.jobs.values():
            if (
                job.status == JobStatus.RUNNING
                and job.stage == "CLAIMED"
                and job.locked_at
                and now - job.locked_at > lock_timeout_seconds
            ):
                job.status = JobStatus.WAITING
                job.stage = "WAITING"
                job.progress_percent = 0.0
                job.locked_at = None
                job.updated_at = now
                requeued += 1
        return requeued


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (Postgres, or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _to_job_record(self, job: "JobRow") -> JobRecord:
        return JobRecord(
            job_id=job.job_id,
            kind=job.kind,
            status=JobStatus(job.status),
            stage=job.stage,
            progress_percent=job.progress_percent,
            params=job.params or {},
            result=job.result,
            error=job.error,
            locked_at=job.locked_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    def create_job(self, kind: str, params: Optional[dict] = None) -> JobRecord:
        now = time.time()
        with self.Session() as session:
            job = JobRow(
                job_id=uuid.uuid4().hex,
                kind=kind,
                status=JobStatus.WAITING.value,
                stage="WAITING",
                progress_percent=0.0,
                params=dict(params or {}),
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            session.commit()
            session.refresh(job)
            return self._to_job_record(job)

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        with self.Session() as session:
            job = session.get(JobRow, job_id)
            if not job:
                return None
            return self._to_job_record(job)

    def list_jobs(self, limit: int = 20) -> list[JobRecord]:
        with self.Session() as session:
            stmt = select(JobRow).order_by(JobRow.created_at.desc()).limit(limit)
            return [self._to_job_record(row) for row in session.execute(stmt).scalars()]

    def _claim_row(self, session: Session, job: "JobRow") -> JobRecord:
        now = time.time()
        job.status = JobStatus.RUNNING.value
        job.stage = "CLAIMED"
        job.locked_at = now
        job.updated_at = now
        session.commit()
        session.refresh(job)
        return self._to_job_record(job)

    def claim_job(self, job_id: str) -> Optional[JobRecord]:
        with self.Session() as session:
            stmt = (
                select(JobRow)
                .where(JobRow.job_id == job_id, JobRow.status == JobStatus.WAITING.value)
                .with_for_update(skip_locked=True)
            )
            job = session.execute(stmt).scalar_one_or_none()
            if not job:
                return None
            return self._claim_row(session, job)

    def claim_next_waiting_job(self) -> Optional[JobRecord]:
        with self.Session() as session:
            stmt = (
                select(JobRow)
                .where(JobRow.status == JobStatus.WAITING.value)
                .order_by(JobRow.created_at.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            job = session.execute(stmt).scalar_one_or_none()
            if not job:
                return None
            return self._claim_row(session, job)

    def requeue_stale_locks(self, lock_timeout_seconds: float = 600) -> int:
        cutoff = time.time() - lock_timeout_seconds
        with self.Session() as session:
            updated = (
                session.query(JobRow)
                .filter(
                    JobRow.status == JobStatus.RUNNING.value,
                    JobRow.stage == "CLAIMED",
                    JobRow.locked_at != None,  # noqa: E711
                    JobRow.locked_at < cutoff,
                )
                .update(
                    {
                        JobRow.status: JobStatus.WAITING.value,
                        JobRow.stage: "WAITING",
                        JobRow.progress_percent: 0.0,
                        JobRow.locked_at: None,
                        JobRow.updated_at: time.time(),
                    },
                    synchronize_session=False,
                )
            )
            session.commit()
            return updated or 0

    def update_job_progress(
        self,
        job_id: str,
        *,
        status: Optional[JobStatus] = None,
        stage: Optional[str] = None,
        progress_percent: Optional[float] = None,
    ) -> None:
        with self.Session() as session:
            job = session.get(JobRow, job_id)
            if not job:
                return
            if status:
                job.status = status.value
            if stage:
                job.stage = stage
            if progress_percent is not None:
                job.progress_percent = progress_percent
            job.updated_at = time.time()
            session.commit()

    def save_job_result(self, job_id: str, result: Optional[dict]) -> None:
        with self.Session() as session:
            job = session.get(JobRow, job_id)
            if not job:
                return
            job.result = result
            job.updated_at = time.time()
            session.commit()

    def save_job_error(self, job_id: str, error: str) -> None:
        with self.Session() as session:
            job = session.get(JobRow, job_id)
            if not job:
                return
            job.error = error
            job.updated_at = time.time()
            session.commit()


Base = declarative_base()


class JobRow(Base):
    __tablename__ = "assignment_jobs"

    job_id = Column(String, primary_key=True)
    kind = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    stage = Column(String, nullable=False, default="WAITING")
    progress_percent = Column(Float, nullable=False, default=0.0)
    params = Column(JSON, nullable=False, default=dict)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    locked_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
