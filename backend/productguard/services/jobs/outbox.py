"""
Pipeline Job Outbox

Jobs are written in the same transaction as the status transition that
caused them and drained later by the JobWorker. Delivery is at-least-once:
handlers must tolerate being run again for the same job.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import PipelineJobDB, JobType, JobStatus, utcnow

logger = logging.getLogger(__name__)


class OutboxService:
    """Enqueue, claim and settle pipeline jobs."""

    def __init__(
        self,
        db: Session,
        max_attempts: int = config.JOB_MAX_ATTEMPTS,
        backoff_seconds: int = config.JOB_RETRY_BACKOFF_SECONDS,
        lease_seconds: int = config.JOB_LEASE_SECONDS,
    ):
        self.db = db
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.lease_seconds = lease_seconds

    def enqueue(
        self,
        job_type: JobType,
        infringement_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> PipelineJobDB:
        """Add a job to the caller's transaction. Does not commit."""
        now = utcnow()
        job = PipelineJobDB(
            id=str(uuid4()),
            job_type=job_type,
            infringement_id=infringement_id,
            payload=payload or {},
            status=JobStatus.PENDING,
            attempts=0,
            available_at=now,
            created_at=now,
        )
        self.db.add(job)
        return job

    def claim(self, limit: int = 20) -> List[PipelineJobDB]:
        """
        Claim up to `limit` due jobs by conditionally flipping them to running
        under a fresh lease. Due means pending and available, or running with
        an expired lease (the worker that held it died). A job another worker
        claimed first is skipped. Commits.
        """
        now = utcnow()
        due = or_(
            and_(PipelineJobDB.status == JobStatus.PENDING, PipelineJobDB.available_at <= now),
            and_(PipelineJobDB.status == JobStatus.RUNNING, PipelineJobDB.lease_expires_at <= now),
        )
        candidates = (
            self.db.query(PipelineJobDB.id)
            .filter(due)
            .order_by(PipelineJobDB.created_at)
            .limit(limit)
            .all()
        )

        claimed_ids = []
        for (job_id,) in candidates:
            result = self.db.execute(
                update(PipelineJobDB)
                .where(PipelineJobDB.id == job_id, due)
                .values(
                    status=JobStatus.RUNNING,
                    attempts=PipelineJobDB.attempts + 1,
                    claimed_at=now,
                    lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed_ids.append(job_id)
        self.db.commit()

        if not claimed_ids:
            return []
        return (
            self.db.query(PipelineJobDB)
            .filter(PipelineJobDB.id.in_(claimed_ids))
            .order_by(PipelineJobDB.created_at)
            .all()
        )

    def complete(self, job: PipelineJobDB) -> None:
        job.status = JobStatus.DONE
        job.completed_at = utcnow()
        job.lease_expires_at = None
        job.last_error = None
        self.db.commit()

    def fail(self, job: PipelineJobDB, error: str) -> None:
        """Return the job to pending with backoff, or mark it failed once attempts run out."""
        job.last_error = error[:2000]
        job.lease_expires_at = None
        if job.attempts >= self.max_attempts:
            job.status = JobStatus.FAILED
            job.completed_at = utcnow()
            logger.error(f"Job {job.id} ({job.job_type.value}) failed permanently after {job.attempts} attempts: {error}")
        else:
            job.status = JobStatus.PENDING
            job.available_at = utcnow() + timedelta(seconds=self.backoff_seconds * job.attempts)
            logger.warning(f"Job {job.id} ({job.job_type.value}) attempt {job.attempts} failed, will retry: {error}")
        self.db.commit()

    def pending_count(self) -> int:
        return self.db.query(PipelineJobDB).filter(PipelineJobDB.status == JobStatus.PENDING).count()
