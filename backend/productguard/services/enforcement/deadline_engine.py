"""
Deadline Engine

AUTHORITY: SYSTEM
Tracks enforcement action deadlines and proposes the next escalation step.
Runs from the scheduler endpoint WITHOUT user confirmation.

Key behaviors:
- Sweep sent actions past deadline_at to no_response (idempotent)
- Propose the next action type from the escalation chain
- Optionally auto-create escalation drafts (idempotent per infringement + type)
- Flag active/takedown_sent infringements due for re-verification, P0 first

Sweeps are read-then-conditional-write: an action is only processed by the
run whose conditional update actually moved it out of sent.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import (
    InfringementDB, EnforcementActionDB,
    InfringementStatus, EnforcementStatus, NoticeTone, Priority, utcnow,
)
from ..errors import EnforcementCoreError, PersistenceError
from ..scoring import PriorityScorer
from .action_service import EnforcementActionService
from .escalation import EscalationChain, DEFAULT_ESCALATION_CHAIN

logger = logging.getLogger(__name__)


REVIEW_STATUSES = (InfringementStatus.ACTIVE, InfringementStatus.TAKEDOWN_SENT)


@dataclass
class EscalationProposal:
    action_id: str
    infringement_id: str
    user_id: str
    current_action_type: str
    proposed_action_type: str
    next_step: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "infringement_id": self.infringement_id,
            "user_id": self.user_id,
            "current_action_type": self.current_action_type,
            "proposed_action_type": self.proposed_action_type,
            "next_step": self.next_step,
            "reason": self.reason,
        }


def days_overdue(deadline_at: Optional[datetime], now: datetime) -> int:
    if deadline_at is None:
        return 0
    return max((now - deadline_at) // timedelta(days=1), 0)


# =============================================================================
# DEADLINE ENGINE
# =============================================================================

class DeadlineEngine:
    """
    Manages enforcement deadlines.

    Core Responsibilities:
    - Detect missed deadlines
    - Propose and (optionally) create escalations
    - Identify infringements due for re-verification
    """

    def __init__(
        self,
        db_session: Session,
        escalation_chain: EscalationChain = DEFAULT_ESCALATION_CHAIN,
        scorer: Optional[PriorityScorer] = None,
    ):
        """Initialize with database session."""
        self.db = db_session
        self.chain = escalation_chain
        self.scorer = scorer or PriorityScorer()
        self.actions = EnforcementActionService(db_session)

    # -------------------------------------------------------------------------
    # Deadline sweep
    # -------------------------------------------------------------------------

    def sweep_overdue(self, now: Optional[datetime] = None) -> List[EnforcementActionDB]:
        """
        Move sent actions whose deadline has passed to no_response.

        Each update is conditional on status = sent, so an action already
        resolved by a previous or concurrent sweep is skipped.
        Does not commit. Returns only the actions this call transitioned.
        """
        now = now or utcnow()
        overdue_ids = [
            action_id for (action_id,) in
            self.db.query(EnforcementActionDB.id)
            .filter(
                EnforcementActionDB.status == EnforcementStatus.SENT,
                EnforcementActionDB.deadline_at <= now,
            )
            .order_by(EnforcementActionDB.deadline_at)
            .all()
        ]

        transitioned = []
        for action_id in overdue_ids:
            result = self.db.execute(
                update(EnforcementActionDB)
                .where(
                    EnforcementActionDB.id == action_id,
                    EnforcementActionDB.status == EnforcementStatus.SENT,
                )
                .values(status=EnforcementStatus.NO_RESPONSE, resolved_at=now, updated_at=now)
                .execution_options(synchronize_session="fetch")
            )
            if result.rowcount == 1:
                transitioned.append(action_id)

        if not transitioned:
            return []

        logger.info(f"Deadline sweep moved {len(transitioned)} actions to no_response")
        return (
            self.db.query(EnforcementActionDB)
            .filter(EnforcementActionDB.id.in_(transitioned))
            .order_by(EnforcementActionDB.deadline_at)
            .all()
        )

    def propose_escalations(
        self,
        actions: List[EnforcementActionDB],
        now: Optional[datetime] = None,
    ) -> List[EscalationProposal]:
        """Next chain step for each action. Actions at the end of the chain are skipped."""
        now = now or utcnow()
        proposals = []
        for action in actions:
            next_type = self.chain.next_step(action.action_type)
            if next_type is None:
                continue
            proposals.append(EscalationProposal(
                action_id=action.id,
                infringement_id=action.infringement_id,
                user_id=action.user_id,
                current_action_type=action.action_type.value,
                proposed_action_type=next_type.value,
                next_step=(action.escalation_step or 1) + 1,
                reason=(
                    f"{action.action_type.value} sent to {action.target_entity or 'target'} "
                    f"received no response after {days_overdue(action.deadline_at, now)} days"
                ),
            ))
        return proposals

    def create_escalation_draft(self, proposal: EscalationProposal) -> Tuple[EnforcementActionDB, bool]:
        """
        Create the proposed draft unless an active action of that type exists.

        Does not commit. Returns (action, created).
        """
        existing = self.actions.find_active(proposal.infringement_id, proposal.proposed_action_type)
        if existing is not None:
            return existing, False

        action = self.actions.create_action(
            infringement_id=proposal.infringement_id,
            user_id=None,
            action_type=proposal.proposed_action_type,
            notice_tone=NoticeTone.FIRM,
            escalation_step=proposal.next_step,
            escalated_from_id=proposal.action_id,
            commit=False,
        )
        self.db.flush()
        logger.info(
            f"Auto-escalated {proposal.current_action_type} -> {proposal.proposed_action_type} "
            f"for infringement {proposal.infringement_id}"
        )
        return action, True

    def run_deadline_check(
        self,
        now: Optional[datetime] = None,
        auto_escalate: Optional[bool] = None,
        p0_only: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Sweep, propose, and optionally create drafts. One commit.

        AUTHORITY: SYSTEM - Called via scheduler endpoint.
        """
        now = now or utcnow()
        auto_escalate = config.AUTO_ESCALATE if auto_escalate is None else auto_escalate
        p0_only = config.AUTO_ESCALATE_P0_ONLY if p0_only is None else p0_only

        drafts_created = []
        errors = []

        try:
            overdue = self.sweep_overdue(now)
            proposals = self.propose_escalations(overdue, now)

            if auto_escalate:
                for proposal in proposals:
                    infringement = self.db.get(InfringementDB, proposal.infringement_id)
                    if p0_only and (infringement is None or infringement.priority != Priority.P0):
                        continue
                    try:
                        action, created = self.create_escalation_draft(proposal)
                        if created:
                            drafts_created.append(action.id)
                    except EnforcementCoreError as e:
                        errors.append({"action_id": proposal.action_id, "error": str(e)})
                        logger.warning(f"Escalation draft for {proposal.action_id} skipped: {e}")

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Deadline check failed: {e}")
            raise PersistenceError(f"Deadline check failed: {e}") from e

        logger.info(
            f"Deadline check: {len(overdue)} overdue, {len(proposals)} proposals, "
            f"{len(drafts_created)} drafts created"
        )

        return {
            "run_date": now.isoformat(),
            "overdue_count": len(overdue),
            "escalation_proposals": [p.to_dict() for p in proposals],
            "drafts_created": drafts_created,
            "auto_escalate": auto_escalate,
            "errors": errors,
        }

    # -------------------------------------------------------------------------
    # Review sweep
    # -------------------------------------------------------------------------

    def find_review_candidates(self, now: Optional[datetime] = None, limit: int = 100) -> List[InfringementDB]:
        """
        Infringements in active/takedown_sent whose next_check_at has elapsed, P0 first.

        Candidates only. Re-scanning is the detection collaborator's job.
        """
        now = now or utcnow()
        priority_rank = case(
            (InfringementDB.priority == Priority.P0, 0),
            (InfringementDB.priority == Priority.P1, 1),
            else_=2,
        )
        return (
            self.db.query(InfringementDB)
            .filter(
                InfringementDB.status.in_(REVIEW_STATUSES),
                InfringementDB.next_check_at <= now,
            )
            .order_by(priority_rank, InfringementDB.next_check_at)
            .limit(limit)
            .all()
        )

    def reschedule_review(self, infringement: InfringementDB, now: Optional[datetime] = None) -> datetime:
        """Push next_check_at out by the priority interval after a re-check. Commits."""
        now = now or utcnow()
        infringement.next_check_at = self.scorer.calculate_next_check(infringement.priority, now)
        infringement.last_seen_at = now
        self.db.commit()
        return infringement.next_check_at

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    def get_upcoming_deadlines(self, days_ahead: int = 7, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Sent actions with deadlines in the next N days."""
        now = now or utcnow()
        horizon = now + timedelta(days=days_ahead)

        actions = (
            self.db.query(EnforcementActionDB)
            .filter(
                EnforcementActionDB.status == EnforcementStatus.SENT,
                EnforcementActionDB.deadline_at >= now,
                EnforcementActionDB.deadline_at <= horizon,
            )
            .order_by(EnforcementActionDB.deadline_at)
            .all()
        )

        return [
            {
                "action_id": a.id,
                "infringement_id": a.infringement_id,
                "action_type": a.action_type.value,
                "target_entity": a.target_entity,
                "deadline_at": a.deadline_at.isoformat(),
                "days_remaining": (a.deadline_at - now).days,
            }
            for a in actions
        ]
