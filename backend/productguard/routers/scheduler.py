"""
Scheduler API Routes

Internal endpoints for system-automatic tasks.
Deadline checks, review sweeps, outbox draining, notarization upgrades.
"""
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import verify_internal_key
from ..database import get_db, SessionLocal
from ..services.enforcement import DeadlineEngine
from ..services.errors import EnforcementCoreError
from ..services.evidence import NotarizationUpgrader, OpenTimestampsClient
from ..services.feedback import FeedbackRecorder
from ..services.jobs import JobWorker, OutboxService, build_default_handlers
from .errors import to_http_exception


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/deadline-check", response_model=dict)
async def run_deadline_check(
    auto_escalate: Optional[bool] = None,
    p0_only: Optional[bool] = None,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Run the enforcement deadline sweep.

    System-automatic - no user confirmation required.
    Moves overdue sent actions to no_response and proposes the next
    escalation step. Drafts are created only when auto-escalation is on.
    """
    engine = DeadlineEngine(db)

    try:
        result = engine.run_deadline_check(auto_escalate=auto_escalate, p0_only=p0_only)
    except EnforcementCoreError as e:
        raise to_http_exception(e)

    return result


@router.post("/review-sweep", response_model=dict)
async def run_review_sweep(
    limit: int = 100,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    List infringements due for re-verification, P0 first.

    The detection service re-scans each candidate.
    """
    engine = DeadlineEngine(db)
    candidates = engine.find_review_candidates(limit=limit)

    return {
        "task": "review_sweep",
        "run_date": datetime.now(timezone.utc).isoformat(),
        "count": len(candidates),
        "candidates": [
            {
                "infringement_id": i.id,
                "source_url": i.source_url,
                "platform": i.platform,
                "status": i.status.value,
                "priority": i.priority.value,
                "next_check_at": i.next_check_at.isoformat() if i.next_check_at else None,
            }
            for i in candidates
        ],
    }


@router.post("/drain-jobs", response_model=dict)
async def drain_jobs(
    limit: int = 20,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Run one batch of queued post-transition jobs.

    For manual intervention; the worker process drains continuously.
    """
    worker = JobWorker(SessionLocal, build_default_handlers())
    summary = worker.drain(limit)

    return {
        "task": "drain_jobs",
        "run_date": datetime.now(timezone.utc).isoformat(),
        **summary,
        "pending": OutboxService(db).pending_count(),
    }


@router.post("/notarization-upgrade", response_model=dict)
async def run_notarization_upgrade(
    limit: int = 100,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Check pending timestamp proofs against the calendar."""
    upgrader = NotarizationUpgrader(db, OpenTimestampsClient())

    try:
        summary = upgrader.upgrade_pending(limit)
    except EnforcementCoreError as e:
        raise to_http_exception(e)

    return {
        "task": "notarization_upgrade",
        "run_date": datetime.now(timezone.utc).isoformat(),
        **summary,
    }


# =============================================================================
# SCHEDULER STATUS ENDPOINTS (READ-ONLY)
# =============================================================================

@router.get("/deadlines", response_model=dict)
async def get_upcoming_deadlines(
    days_ahead: int = 7,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Get upcoming deadlines for monitoring.
    """
    engine = DeadlineEngine(db)
    deadlines = engine.get_upcoming_deadlines(days_ahead)

    return {
        "days_ahead": days_ahead,
        "count": len(deadlines),
        "deadlines": deadlines,
    }


@router.get("/learning-patterns", response_model=dict)
async def get_learning_patterns(
    product_id: str,
    pattern_type: str = "verified_keyword",
    limit: int = 10,
    min_confidence: float = 0.0,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Top learned patterns for scan tuning.
    """
    patterns = FeedbackRecorder(db).get_top_patterns(product_id, pattern_type, limit, min_confidence)

    return {
        "product_id": product_id,
        "pattern_type": pattern_type,
        "patterns": [
            {
                "pattern_value": p.pattern_value,
                "platform": p.platform,
                "occurrences": p.occurrences,
                "verified_count": p.verified_count,
                "rejected_count": p.rejected_count,
                "confidence_score": p.confidence_score,
                "last_seen_at": p.last_seen_at.isoformat() if p.last_seen_at else None,
            }
            for p in patterns
        ],
    }
