"""
Tests for the pipeline job outbox and the worker that drains it.

Covers leases (a dead worker's jobs are claimed again) and handlers that
see the same job more than once.
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest


def jobs_for(db, infringement_id):
    from productguard.models.db_models import PipelineJobDB

    db.expire_all()
    return db.query(PipelineJobDB).filter(PipelineJobDB.infringement_id == infringement_id).all()


# =============================================================================
# TEST: OUTBOX
# =============================================================================

class TestOutboxService:
    """Claim, complete, retry with backoff, fail permanently."""

    def test_claim_marks_running_once(self, db, verified):
        from productguard.models.db_models import JobStatus
        from productguard.services.jobs import OutboxService

        outbox = OutboxService(db)
        claimed = outbox.claim()

        assert len(claimed) == 3
        assert all(j.status == JobStatus.RUNNING and j.attempts == 1 for j in claimed)
        assert outbox.claim() == []

    def test_complete(self, db, verified):
        from productguard.models.db_models import JobStatus
        from productguard.services.jobs import OutboxService

        outbox = OutboxService(db)
        job = outbox.claim(limit=1)[0]
        outbox.complete(job)

        assert job.status == JobStatus.DONE
        assert job.completed_at is not None
        assert outbox.pending_count() == 2

    def test_fail_backs_off_then_gives_up(self, db, verified):
        from productguard.models.db_models import JobStatus, utcnow
        from productguard.services.jobs import OutboxService

        outbox = OutboxService(db, max_attempts=2, backoff_seconds=60)
        job = outbox.claim(limit=1)[0]

        outbox.fail(job, "capture timed out")
        assert job.status == JobStatus.PENDING
        assert job.available_at > utcnow() + timedelta(seconds=30)
        assert job.last_error == "capture timed out"
        # Backed-off job is not due yet
        assert job.id not in [j.id for j in outbox.claim()]

        job.available_at = utcnow() - timedelta(seconds=1)
        db.commit()
        retried = [j for j in outbox.claim() if j.id == job.id]
        assert retried[0].attempts == 2

        outbox.fail(retried[0], "capture timed out again")
        assert retried[0].status == JobStatus.FAILED
        assert retried[0].completed_at is not None

    def test_claim_sets_a_lease(self, db, verified):
        from productguard.models.db_models import utcnow
        from productguard.services.jobs import OutboxService

        job = OutboxService(db, lease_seconds=120).claim(limit=1)[0]

        assert job.claimed_at is not None
        assert job.lease_expires_at > utcnow() + timedelta(seconds=60)

    def test_live_lease_is_not_reclaimed(self, db, verified):
        from productguard.services.jobs import OutboxService

        OutboxService(db).claim()
        assert OutboxService(db).claim() == []

    def test_expired_lease_is_reclaimed_after_worker_death(self, db, verified):
        from productguard.database import SessionLocal
        from productguard.models.db_models import JobStatus, utcnow
        from productguard.services.jobs import JobWorker, OutboxService

        # Claimed by a worker that died before settling anything
        stranded = OutboxService(db).claim()
        assert len(stranded) == 3
        for job in stranded:
            job.lease_expires_at = utcnow() - timedelta(seconds=1)
        db.commit()

        ran = []
        handlers = {job.job_type: (lambda session, j: ran.append(j.id)) for job in stranded}
        summary = JobWorker(SessionLocal, handlers, max_workers=1).drain()

        assert summary == {"claimed": 3, "done": 3, "retried": 0, "failed": 0}
        assert sorted(ran) == sorted(j.id for j in stranded)
        for job in jobs_for(db, verified.id):
            assert job.status == JobStatus.DONE
            assert job.attempts == 2
            assert job.lease_expires_at is None

    def test_settled_job_is_never_reclaimed(self, db, verified):
        from productguard.models.db_models import utcnow
        from productguard.services.jobs import OutboxService

        outbox = OutboxService(db)
        job = outbox.claim(limit=1)[0]
        outbox.complete(job)
        job.lease_expires_at = utcnow() - timedelta(seconds=1)
        db.commit()

        assert job.id not in [j.id for j in outbox.claim()]

    def test_enqueue_joins_caller_transaction(self, db, ingest):
        from productguard.models.db_models import JobType
        from productguard.services.jobs import OutboxService

        infringement = ingest()
        OutboxService(db).enqueue(JobType.CRM_EVENT, infringement.id, {"action": "verify"})
        db.rollback()

        assert jobs_for(db, infringement.id) == []


# =============================================================================
# TEST: WORKER
# =============================================================================

class TestJobWorker:
    """drain() runs handlers and settles each job."""

    def test_drain_runs_handlers_and_settles_jobs(self, db, verified):
        from productguard.database import SessionLocal
        from productguard.models.db_models import JobStatus, JobType
        from productguard.services.jobs import JobWorker

        seen = []

        def ok(session, job):
            seen.append(job.job_type)

        def boom(session, job):
            raise RuntimeError("capture service down")

        handlers = {JobType.FEEDBACK: ok, JobType.CRM_EVENT: ok, JobType.EVIDENCE_SNAPSHOT: boom}
        summary = JobWorker(SessionLocal, handlers, max_workers=1).drain()

        assert summary == {"claimed": 3, "done": 2, "retried": 1, "failed": 0}
        assert sorted(seen, key=lambda t: t.value) == [JobType.CRM_EVENT, JobType.FEEDBACK]

        by_type = {j.job_type: j for j in jobs_for(db, verified.id)}
        assert by_type[JobType.FEEDBACK].status == JobStatus.DONE
        assert by_type[JobType.EVIDENCE_SNAPSHOT].status == JobStatus.PENDING
        assert by_type[JobType.EVIDENCE_SNAPSHOT].last_error == "RuntimeError: capture service down"

    def test_missing_handler_is_retried(self, db, verified):
        from productguard.database import SessionLocal
        from productguard.services.jobs import JobWorker

        summary = JobWorker(SessionLocal, {}, max_workers=1).drain()
        assert summary["retried"] == 3

    def test_nothing_to_do(self, db):
        from productguard.database import SessionLocal
        from productguard.services.jobs import JobWorker

        assert JobWorker(SessionLocal, {}).drain() == {"claimed": 0, "done": 0, "retried": 0, "failed": 0}

    def test_default_feedback_handler_records_patterns(self, db, verified):
        from productguard.database import SessionLocal
        from productguard.models.db_models import JobType, LearningPatternDB
        from productguard.services.jobs import JobWorker
        from productguard.services.jobs.worker import handle_feedback

        summary = JobWorker(SessionLocal, {JobType.FEEDBACK: handle_feedback}, max_workers=1).drain()

        assert summary["done"] == 1
        db.expire_all()
        assert db.query(LearningPatternDB).filter(
            LearningPatternDB.pattern_type == "verified_domain"
        ).count() == 1

    def test_redelivered_feedback_job_counts_once(self, db, verified):
        from productguard.models.db_models import FeedbackReceiptDB, JobType, LearningPatternDB
        from productguard.services.jobs.worker import handle_feedback

        job = [j for j in jobs_for(db, verified.id) if j.job_type == JobType.FEEDBACK][0]
        handle_feedback(db, job)
        handle_feedback(db, job)

        db.expire_all()
        platform = db.query(LearningPatternDB).filter(
            LearningPatternDB.pattern_type == "verified_platform"
        ).one()
        assert platform.occurrences == 1
        assert platform.verified_count == 1
        assert platform.confidence_score == 1.0
        assert db.get(FeedbackReceiptDB, job.id).outcome == "verify"


class TestCrmEventHandler:
    """CRM delivery failures never fail the job."""

    def test_delivery_failure_is_swallowed(self, monkeypatch):
        from productguard.services.errors import BestEffortError
        from productguard.services.jobs import worker

        crm = MagicMock()
        crm.track.side_effect = BestEffortError("crm", "HTTP 502")
        monkeypatch.setattr(worker, "CrmClient", lambda: crm)

        job = MagicMock(infringement_id="inf-1", payload={"action": "verify", "to_status": "active"})
        worker.handle_crm_event(MagicMock(), job)

        event, data = crm.track.call_args[0]
        assert event == "infringement_status_changed"
        assert data["to_status"] == "active"

    def test_unexpected_error_propagates(self, monkeypatch):
        from productguard.services.jobs import worker

        crm = MagicMock()
        crm.track.side_effect = RuntimeError("bug")
        monkeypatch.setattr(worker, "CrmClient", lambda: crm)

        with pytest.raises(RuntimeError):
            worker.handle_crm_event(MagicMock(), MagicMock(infringement_id="inf-1", payload={}))
