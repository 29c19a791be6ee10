"""
Infringement API Routes

Candidate ingestion (detection, internal key), reviewer actions,
the status audit trail and the evidence snapshot.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user, verify_internal_key
from ..database import get_db
from ..models.db_models import InfringementDB, UserDB, EvidenceSnapshotDB
from ..models.signals import DetectionSignal
from ..services.errors import EnforcementCoreError, AuthorizationError
from ..services.evidence import verify_snapshot_integrity
from ..services.lifecycle import (
    InfringementService,
    InfringementStateMachine,
    ProductOwnershipAuthorizer,
    TransitionContext,
)
from .errors import to_http_exception


router = APIRouter(prefix="/infringements", tags=["infringements"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class IngestRequest(BaseModel):
    """Candidate from the detection collaborator."""
    product_id: str = Field(..., description="Product the candidate infringes")
    signal: DetectionSignal


class ReviewRequest(BaseModel):
    """Reviewer decision on a pending candidate."""
    action: str = Field(..., description="verify, reject or whitelist")


class ReopenRequest(BaseModel):
    """Removed content reappeared."""
    reason: Optional[str] = Field(None, max_length=500)


def _infringement_to_dict(infringement: InfringementDB) -> Dict[str, Any]:
    return {
        "id": infringement.id,
        "product_id": infringement.product_id,
        "source_url": infringement.source_url,
        "platform": infringement.platform,
        "match_type": infringement.match_type,
        "status": infringement.status.value,
        "priority": infringement.priority.value,
        "severity_score": infringement.severity_score,
        "scoring_breakdown": infringement.scoring_breakdown,
        "next_check_at": infringement.next_check_at.isoformat() if infringement.next_check_at else None,
        "evidence_snapshot_id": infringement.evidence_snapshot_id,
        "first_seen_at": infringement.first_seen_at.isoformat() if infringement.first_seen_at else None,
        "last_seen_at": infringement.last_seen_at.isoformat() if infringement.last_seen_at else None,
    }


def _load_owned(db: Session, infringement_id: str, user: UserDB) -> InfringementDB:
    infringement = InfringementService(db).get_infringement(infringement_id)
    if not ProductOwnershipAuthorizer(db).owns_product(user.id, infringement):
        raise AuthorizationError(f"User {user.id} does not own the product for infringement {infringement_id}")
    return infringement


# =============================================================================
# DETECTION (INTERNAL)
# =============================================================================

@router.post("", response_model=dict)
async def ingest_candidate(
    request: IngestRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Score and store a detection candidate as pending_verification.

    Re-detection of an open record only refreshes last_seen_at.
    """
    try:
        infringement, created = InfringementService(db).ingest_candidate(request.product_id, request.signal)
    except EnforcementCoreError as e:
        raise to_http_exception(e)

    return {"created": created, "infringement": _infringement_to_dict(infringement)}


# =============================================================================
# REVIEW
# =============================================================================

@router.post("/{infringement_id}/verify", response_model=dict)
async def review_infringement(
    infringement_id: str,
    request: ReviewRequest,
    http_request: Request,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Apply a reviewer action (verify, reject, whitelist).

    Evidence capture, feedback and CRM events are queued and run by the worker.
    """
    context = TransitionContext(
        ip_address=http_request.client.host if http_request.client else None,
        user_agent=http_request.headers.get("user-agent"),
    )
    machine = InfringementStateMachine(db, ProductOwnershipAuthorizer(db))

    try:
        result = machine.transition(infringement_id, request.action, current_user.id, context)
    except EnforcementCoreError as e:
        raise to_http_exception(e)

    return result.to_dict()


@router.post("/{infringement_id}/reopen", response_model=dict)
async def reopen_infringement(
    infringement_id: str,
    request: ReopenRequest,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Put a removed infringement back to active."""
    machine = InfringementStateMachine(db, ProductOwnershipAuthorizer(db))
    try:
        entry = machine.reopen(infringement_id, current_user.id, reason=request.reason)
    except EnforcementCoreError as e:
        raise to_http_exception(e)

    return {
        "infringement_id": infringement_id,
        "from_status": entry.from_status.value,
        "to_status": entry.to_status.value,
        "transition_id": entry.id,
    }


@router.get("/{infringement_id}", response_model=dict)
async def get_infringement(
    infringement_id: str,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        infringement = _load_owned(db, infringement_id, current_user)
    except EnforcementCoreError as e:
        raise to_http_exception(e)
    return _infringement_to_dict(infringement)


@router.get("/{infringement_id}/transitions", response_model=list)
async def get_transitions(
    infringement_id: str,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Status audit trail, oldest first."""
    try:
        _load_owned(db, infringement_id, current_user)
        history = InfringementService(db).get_transition_history(infringement_id)
    except EnforcementCoreError as e:
        raise to_http_exception(e)

    return [
        {
            "id": t.id,
            "from_status": t.from_status.value if t.from_status else None,
            "to_status": t.to_status.value,
            "reason": t.reason,
            "triggered_by": t.triggered_by.value,
            "metadata": t.event_metadata or {},
            "created_at": t.created_at.isoformat(),
        }
        for t in history
    ]


@router.get("/{infringement_id}/evidence", response_model=dict)
async def get_evidence(
    infringement_id: str,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Evidence snapshot with a recomputed integrity check."""
    try:
        infringement = _load_owned(db, infringement_id, current_user)
    except EnforcementCoreError as e:
        raise to_http_exception(e)

    snapshot: Optional[EvidenceSnapshotDB] = (
        db.query(EvidenceSnapshotDB)
        .filter(EvidenceSnapshotDB.infringement_id == infringement.id)
        .first()
    )
    if snapshot is None:
        return {"infringement_id": infringement.id, "status": "pending", "snapshot": None}

    return {
        "infringement_id": infringement.id,
        "status": "ready",
        "snapshot": {
            "id": snapshot.id,
            "content_hash": snapshot.content_hash,
            "page_url": snapshot.page_url,
            "page_capture": snapshot.page_capture,
            "infrastructure_snapshot": snapshot.infrastructure_snapshot,
            "evidence_matches": snapshot.evidence_matches,
            "timestamp_status": snapshot.timestamp_status.value if snapshot.timestamp_status else None,
            "timestamp_proof": snapshot.timestamp_proof,
            "attestation": snapshot.attestation,
            "chain_of_custody": snapshot.chain_of_custody,
            "ai_evidence_analysis": snapshot.ai_evidence_analysis,
            "captured_at": snapshot.captured_at.isoformat() if snapshot.captured_at else None,
        },
        "integrity": verify_snapshot_integrity(snapshot),
    }
