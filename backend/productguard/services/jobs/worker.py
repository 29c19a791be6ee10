"""
Job Worker

Drains the pipeline job outbox. Jobs for the same infringement run in
order on one session; different infringements run in parallel.

A handler is any callable(db, job). Raising marks the attempt failed and
the outbox decides between retry and permanent failure.
"""
import logging
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List

from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import JobStatus, JobType, PipelineJobDB
from ..errors import BestEffortError
from ..evidence import (
    ContentComparisonClient, CrmClient, EvidencePipeline, OpenTimestampsClient, PageCaptureClient,
)
from ..feedback import FeedbackRecorder
from .outbox import OutboxService

logger = logging.getLogger(__name__)

JobHandler = Callable[[Session, PipelineJobDB], Any]


# =============================================================================
# DEFAULT HANDLERS
# =============================================================================

def handle_evidence_snapshot(db: Session, job: PipelineJobDB) -> None:
    pipeline = EvidencePipeline(
        db,
        page_capture=PageCaptureClient(),
        notarizer=OpenTimestampsClient(),
        comparer=ContentComparisonClient() if config.AI_ANALYSIS_URL else None,
        crm=CrmClient(),
    )
    result = pipeline.run(job.infringement_id, job.payload)
    if result.degraded_stages:
        logger.info(f"Evidence for {job.infringement_id} built with degraded stages: {result.degraded_stages}")


def handle_feedback(db: Session, job: PipelineJobDB) -> None:
    FeedbackRecorder(db).record(job.infringement_id, (job.payload or {}).get("action"), job_id=job.id)


def handle_crm_event(db: Session, job: PipelineJobDB) -> None:
    payload = job.payload or {}
    try:
        CrmClient().track("infringement_status_changed", {
            "infringement_id": job.infringement_id,
            "action": payload.get("action"),
            "from_status": payload.get("from_status"),
            "to_status": payload.get("to_status"),
            "actor_id": payload.get("actor_id"),
            "transitioned_at": payload.get("transitioned_at"),
        })
    except BestEffortError as e:
        logger.warning(f"CRM event for {job.infringement_id} dropped: {e}")


def build_default_handlers() -> Dict[JobType, JobHandler]:
    return {
        JobType.EVIDENCE_SNAPSHOT: handle_evidence_snapshot,
        JobType.FEEDBACK: handle_feedback,
        JobType.CRM_EVENT: handle_crm_event,
    }


# =============================================================================
# WORKER
# =============================================================================

class JobWorker:
    """Claims due jobs and runs them through their handlers."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        handlers: Dict[JobType, JobHandler],
        max_workers: int = config.WORKER_MAX_THREADS,
    ):
        self.session_factory = session_factory
        self.handlers = handlers
        self.max_workers = max(1, max_workers)

    def drain(self, limit: int = 20) -> Dict[str, int]:
        """Run one batch. Returns counts of claimed, done, retried and failed jobs."""
        db = self.session_factory()
        try:
            claimed = OutboxService(db).claim(limit)
            groups: "OrderedDict[str, List[str]]" = OrderedDict()
            for job in claimed:
                groups.setdefault(job.infringement_id, []).append(job.id)
        finally:
            db.close()

        summary = {"claimed": len(claimed), "done": 0, "retried": 0, "failed": 0}
        if not claimed:
            return summary

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            for statuses in executor.map(self._run_group, groups.values()):
                for status in statuses:
                    if status == JobStatus.DONE:
                        summary["done"] += 1
                    elif status == JobStatus.PENDING:
                        summary["retried"] += 1
                    else:
                        summary["failed"] += 1

        logger.info(
            f"Drained {summary['claimed']} jobs: {summary['done']} done, "
            f"{summary['retried']} retrying, {summary['failed']} failed"
        )
        return summary

    def _run_group(self, job_ids: List[str]) -> List[JobStatus]:
        db = self.session_factory()
        outbox = OutboxService(db)
        statuses = []
        try:
            for job_id in job_ids:
                job = db.get(PipelineJobDB, job_id)
                if job is None:
                    continue
                statuses.append(self._run_job(db, outbox, job))
        finally:
            db.close()
        return statuses

    def _run_job(self, db: Session, outbox: OutboxService, job: PipelineJobDB) -> JobStatus:
        handler = self.handlers.get(job.job_type)
        if handler is None:
            outbox.fail(job, f"No handler registered for {job.job_type.value}")
            return job.status

        try:
            handler(db, job)
        except Exception as e:
            # Handler errors settle the attempt; the outbox owns retry policy
            db.rollback()
            job = db.get(PipelineJobDB, job.id)
            outbox.fail(job, f"{type(e).__name__}: {e}")
            return job.status

        outbox.complete(job)
        return job.status
