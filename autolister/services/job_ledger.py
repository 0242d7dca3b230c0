"""
Job Ledger

스테이지 실행마다 job_key 기반 Job 레코드를 남긴다.
관계형 DB의 unique 제약("create with unique key")을 분산 락 대용으로 사용하므로
같은 논리 단위에 대한 동시 실행은 최대 1건으로 제한된다.
"""
import logging
import re
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from autolister.exceptions import (
    DuplicateJobError,
    InvalidJobTransitionError,
    PipelineError,
    ValidationError,
)
from autolister.models import Job, JobStage, JobStatus

logger = logging.getLogger(__name__)


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(value or "").lower()).strip("-")
    return slug or "unit"


def new_run_id() -> str:
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:6]}"


def build_job_key(stage: str, unit: str, run_id: str) -> str:
    """
    stage + 논리 단위 + 실행 ID 로 job_key 생성.
    같은 실행(run)에서 같은 단위는 절대 같은 키로 재시도하지 않는다.
    """
    if stage.upper() not in JobStage.ALL:
        raise ValueError(f"Unknown stage: {stage}")
    return f"{stage.lower()}:{slugify(unit)}:{run_id}"


def _error_payload(error: BaseException | str) -> Dict[str, Any]:
    if isinstance(error, str):
        return {"message": error, "code": "ERROR", "kind": None}
    payload: Dict[str, Any] = {
        "message": str(error) or error.__class__.__name__,
        "code": error.__class__.__name__,
        "kind": None,
    }
    if isinstance(error, PipelineError):
        payload["code"] = error.error_code
        payload["kind"] = error.error_kind.value
    if isinstance(error, ValidationError) and error.details:
        payload["details"] = list(error.details)
    return payload


class JobLedger:
    def __init__(self, db: Session):
        self.db = db

    def begin(
        self,
        job_key: str,
        stage: str,
        metadata: Optional[Dict[str, Any]] = None,
        parent_job_id: Optional[uuid.UUID] = None,
    ) -> Job:
        """
        RUNNING 상태의 Job 생성. 이미 존재하는 job_key면 DuplicateJobError.
        호출자는 DuplicateJobError를 "이미 처리됨(skip)"으로 취급해야 한다.
        """
        stage = stage.upper()
        if stage not in JobStage.ALL:
            raise ValueError(f"Unknown stage: {stage}")

        job = Job(
            job_key=job_key,
            stage=stage,
            status=JobStatus.RUNNING,
            attempts=1,
            meta=dict(metadata or {}),
            parent_job_id=parent_job_id,
            started_at=datetime.now(timezone.utc),
        )
        self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Duplicate job key rejected: {job_key}")
            raise DuplicateJobError(job_key, stage=stage)

        logger.debug(f"Job started: {job_key} ({stage})")
        return job

    def _finish(self, job_id: uuid.UUID, status: str) -> Job:
        job = self.db.get(Job, job_id)
        if job is None:
            raise LookupError(f"Job not found: {job_id}")
        if job.is_terminal:
            raise InvalidJobTransitionError(job_id, job.status, status)

        now = datetime.now(timezone.utc)
        job.status = status
        job.completed_at = now
        if job.started_at:
            started = job.started_at
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)
            job.duration_ms = int((now - started).total_seconds() * 1000)
        return job

    def complete(self, job_id: uuid.UUID, result: Optional[Dict[str, Any]] = None) -> Job:
        job = self._finish(job_id, JobStatus.SUCCESS)
        job.result = dict(result or {})
        self.db.commit()
        logger.info(f"Job succeeded: {job.job_key} ({job.duration_ms}ms)")
        return job

    def fail(self, job_id: uuid.UUID, error: BaseException | str) -> Job:
        job = self._finish(job_id, JobStatus.FAILED)
        job.error = _error_payload(error)
        self.db.commit()
        logger.warning(f"Job failed: {job.job_key} - {job.error.get('message')}")
        return job

    def record_attempt(self, job_id: uuid.UUID, attempts: Optional[int] = None) -> None:
        """attempts 미지정 시 1 증가, 지정 시 그 값으로 맞춘다(감소는 하지 않음)."""
        job = self.db.get(Job, job_id)
        if job is None or job.is_terminal:
            return
        job.attempts = job.attempts + 1 if attempts is None else max(job.attempts, attempts)
        self.db.commit()

    def get(self, job_id: uuid.UUID) -> Optional[Job]:
        return self.db.get(Job, job_id)

    def get_by_key(self, job_key: str) -> Optional[Job]:
        return self.db.execute(select(Job).where(Job.job_key == job_key)).scalar_one_or_none()

    def list_by_status(self, status: str, limit: Optional[int] = None) -> List[Job]:
        stmt = select(Job).where(Job.status == status.upper()).order_by(Job.created_at.desc())
        if limit:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def list_by_stage(self, stage: str, limit: Optional[int] = None) -> List[Job]:
        stmt = select(Job).where(Job.stage == stage.upper()).order_by(Job.created_at.desc())
        if limit:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    @contextmanager
    def track(
        self,
        job_key: str,
        stage: str,
        metadata: Optional[Dict[str, Any]] = None,
        parent_job_id: Optional[uuid.UUID] = None,
    ) -> Iterator["TrackedJob"]:
        """
        with ledger.track(...) as tracked:
            ...
            tracked.result = {...}

        블록이 정상 종료되면 SUCCESS, 예외가 나면 FAILED 기록 후 예외를 다시 던진다.
        """
        job = self.begin(job_key, stage, metadata=metadata, parent_job_id=parent_job_id)
        tracked = TrackedJob(job)
        started = time.monotonic()
        try:
            yield tracked
        except Exception as e:
            self.db.rollback()
            self.fail(job.id, e)
            raise
        else:
            self.complete(job.id, tracked.result)
        finally:
            logger.debug(f"{job_key} finished in {time.monotonic() - started:.2f}s")


class TrackedJob:
    def __init__(self, job: Job):
        self.job = job
        self.result: Dict[str, Any] = {}

    @property
    def id(self) -> uuid.UUID:
        return self.job.id
