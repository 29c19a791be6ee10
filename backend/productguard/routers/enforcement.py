"""
Enforcement Action API Routes

Draft, send and settle takedown notices against verified infringements.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models.db_models import EnforcementActionDB, UserDB
from ..services.enforcement import EnforcementActionService
from ..services.errors import EnforcementCoreError
from .errors import to_http_exception


router = APIRouter(prefix="/enforcement-actions", tags=["enforcement"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CreateActionRequest(BaseModel):
    """Request to draft an enforcement action."""
    infringement_id: str
    action_type: str = Field(..., description="dmca_platform, dmca_host, dmca_cdn, google_deindex, ...")
    target_entity: Optional[str] = Field(None, description="Who receives the notice")
    target_contact: Optional[str] = Field(None, description="Abuse email or form URL")
    notice_tone: str = Field(default="friendly", description="friendly, firm or nuclear")


class MarkSentRequest(BaseModel):
    """Confirm the notice was dispatched."""
    sent_at: Optional[datetime] = None
    deadline_days: Optional[int] = Field(None, ge=0, description="Override the target's response window")


class RecordResponseRequest(BaseModel):
    """Target's reply to a sent notice."""
    outcome: str = Field(..., description="acknowledged, removed or failed")
    responded_at: Optional[datetime] = None


class CounterNoticeRequest(BaseModel):
    """Target disputed the notice."""
    responded_at: Optional[datetime] = None


def _action_to_dict(action: EnforcementActionDB) -> dict:
    return {
        "id": action.id,
        "infringement_id": action.infringement_id,
        "action_type": action.action_type.value,
        "status": action.status.value,
        "escalation_step": action.escalation_step,
        "escalated_from_id": action.escalated_from_id,
        "target_entity": action.target_entity,
        "target_contact": action.target_contact,
        "notice_tone": action.notice_tone.value,
        "sent_at": action.sent_at.isoformat() if action.sent_at else None,
        "deadline_at": action.deadline_at.isoformat() if action.deadline_at else None,
        "response_at": action.response_at.isoformat() if action.response_at else None,
        "resolved_at": action.resolved_at.isoformat() if action.resolved_at else None,
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict, status_code=201)
async def create_action(
    request: CreateActionRequest,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Draft an action. One active action per infringement and type."""
    try:
        action = EnforcementActionService(db).create_action(
            infringement_id=request.infringement_id,
            user_id=current_user.id,
            action_type=request.action_type,
            target_entity=request.target_entity,
            target_contact=request.target_contact,
            notice_tone=request.notice_tone,
        )
    except EnforcementCoreError as e:
        raise to_http_exception(e)
    return _action_to_dict(action)


@router.post("/{action_id}/sent", response_model=dict)
async def mark_sent(
    action_id: str,
    request: MarkSentRequest,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Mark a draft as sent.

    Starts the response deadline and moves the infringement to takedown_sent.
    """
    try:
        action = EnforcementActionService(db).mark_sent(
            action_id,
            current_user.id,
            sent_at=request.sent_at,
            deadline_days=request.deadline_days,
        )
    except EnforcementCoreError as e:
        raise to_http_exception(e)
    return _action_to_dict(action)


@router.post("/{action_id}/response", response_model=dict)
async def record_response(
    action_id: str,
    request: RecordResponseRequest,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Log the target's response. removed closes the infringement."""
    try:
        action = EnforcementActionService(db).record_response(
            action_id,
            current_user.id,
            request.outcome,
            responded_at=request.responded_at,
        )
    except EnforcementCoreError as e:
        raise to_http_exception(e)
    return _action_to_dict(action)


@router.post("/{action_id}/counter-notice", response_model=dict)
async def record_counter_notice(
    action_id: str,
    request: CounterNoticeRequest,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Log a counter-notice. The action fails and the infringement becomes disputed."""
    try:
        action = EnforcementActionService(db).record_counter_notice(
            action_id,
            current_user.id,
            responded_at=request.responded_at,
        )
    except EnforcementCoreError as e:
        raise to_http_exception(e)
    return _action_to_dict(action)
