"""
Infringement Lifecycle State Machine

Deterministic state machine for infringement review and enforcement status.
The only writer of InfringementDB.status.
Every transition is paired with one immutable StatusTransition row and its
outbox jobs in a single transaction.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import (
    InfringementDB, ProductDB, StatusTransitionDB,
    InfringementStatus, ReviewAction, TriggeredBy, JobType,
    utcnow,
)
from ..errors import (
    ValidationError, InvalidTransitionError, NotFoundError, AuthorizationError,
    PersistenceError, TransitionConflictError,
)
from ..jobs.outbox import OutboxService
from .authorization import Authorizer

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION MAPS
# =============================================================================
#
# AUTHORITY MODEL:
# - USER: review actions (verify / reject / whitelist), owner only
# - SYSTEM: enforcement progress (takedown sent, content removed, dispute)
# - Reopen is owner-initiated but rides the system map: removed content came back
#
# =============================================================================

TRANSITIONS: Dict[Tuple[InfringementStatus, ReviewAction], InfringementStatus] = {
    (InfringementStatus.PENDING_VERIFICATION, ReviewAction.VERIFY): InfringementStatus.ACTIVE,
    (InfringementStatus.PENDING_VERIFICATION, ReviewAction.REJECT): InfringementStatus.FALSE_POSITIVE,
    (InfringementStatus.ACTIVE, ReviewAction.REJECT): InfringementStatus.FALSE_POSITIVE,
    (InfringementStatus.PENDING_VERIFICATION, ReviewAction.WHITELIST): InfringementStatus.ARCHIVED,
    (InfringementStatus.ACTIVE, ReviewAction.WHITELIST): InfringementStatus.ARCHIVED,
}

TRANSITION_REASONS = {
    ReviewAction.VERIFY: "User verified as real infringement",
    ReviewAction.REJECT: "User marked as false positive",
    ReviewAction.WHITELIST: "User whitelisted source URL",
}

# System event -> (allowed from statuses, to status)
SYSTEM_TRANSITIONS: Dict[str, Tuple[frozenset, InfringementStatus]] = {
    "takedown_sent": (
        frozenset({InfringementStatus.ACTIVE}),
        InfringementStatus.TAKEDOWN_SENT,
    ),
    "content_removed": (
        frozenset({InfringementStatus.ACTIVE, InfringementStatus.TAKEDOWN_SENT, InfringementStatus.DISPUTED}),
        InfringementStatus.REMOVED,
    ),
    "counter_notice": (
        frozenset({InfringementStatus.TAKEDOWN_SENT}),
        InfringementStatus.DISPUTED,
    ),
    "reopen": (
        frozenset({InfringementStatus.REMOVED}),
        InfringementStatus.ACTIVE,
    ),
}

# Outbox jobs written with each review action
ACTION_JOBS = {
    ReviewAction.VERIFY: (JobType.FEEDBACK, JobType.CRM_EVENT, JobType.EVIDENCE_SNAPSHOT),
    ReviewAction.REJECT: (JobType.FEEDBACK, JobType.CRM_EVENT),
    ReviewAction.WHITELIST: (JobType.FEEDBACK, JobType.CRM_EVENT),
}


@dataclass
class TransitionContext:
    """Request details carried into the audit row and the outbox payload."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class TransitionResult:
    infringement_id: str
    action: str
    from_status: InfringementStatus
    to_status: InfringementStatus
    transition_id: str
    changed_at: datetime
    evidence_status: str  # in_progress | not_applicable
    jobs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "infringement_id": self.infringement_id,
            "action": self.action,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "transition_id": self.transition_id,
            "changed_at": self.changed_at.isoformat(),
            "evidence_status": self.evidence_status,
            "jobs": self.jobs,
        }


def parse_action(action: Union[str, ReviewAction]) -> ReviewAction:
    try:
        return ReviewAction(action)
    except ValueError:
        raise ValidationError(f"Invalid action: {action!r}. Must be verify, reject or whitelist")


def can_transition(from_status: InfringementStatus, action: ReviewAction) -> bool:
    return (from_status, action) in TRANSITIONS


# =============================================================================
# STATE MACHINE
# =============================================================================

class InfringementStateMachine:
    """
    Single authoritative write path for infringement status.

    Core Principles:
    - Authorization and validation happen before any write
    - Status update is a compare-and-swap on the expected prior status
    - Status update, audit row and outbox jobs commit together or not at all
    - Downstream work never runs inside the transition
    """

    def __init__(self, db_session: Session, authorizer: Authorizer):
        self.db = db_session
        self.authorizer = authorizer
        self.outbox = OutboxService(db_session)

    def transition(
        self,
        infringement_id: str,
        action: Union[str, ReviewAction],
        actor_id: str,
        context: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        """Apply a reviewer action. Raises on validation, auth or persistence failure."""
        action = parse_action(action)
        if not actor_id:
            raise ValidationError("actor_id is required")
        context = context or TransitionContext()

        infringement = self.db.get(InfringementDB, infringement_id)
        if infringement is None:
            raise NotFoundError(f"Infringement {infringement_id} not found")

        if not self.authorizer.owns_product(actor_id, infringement):
            raise AuthorizationError(f"User {actor_id} does not own the product for infringement {infringement_id}")

        from_status = InfringementStatus(infringement.status)
        if not can_transition(from_status, action):
            raise InvalidTransitionError(from_status.value, action.value)
        to_status = TRANSITIONS[(from_status, action)]

        now = utcnow()
        values = {
            "status": to_status,
            "previous_status": from_status,
            "status_changed_at": now,
            "updated_at": now,
        }
        if action == ReviewAction.VERIFY:
            values["verified_by_user_id"] = actor_id
            values["verified_by_user_at"] = now

        try:
            self._compare_and_swap(infringement_id, from_status, values)

            log_entry = StatusTransitionDB(
                id=str(uuid4()),
                infringement_id=infringement_id,
                from_status=from_status,
                to_status=to_status,
                reason=TRANSITION_REASONS[action],
                triggered_by=TriggeredBy.USER,
                event_metadata={"user_id": actor_id, "action": action.value},
                created_at=now,
            )
            self.db.add(log_entry)

            if action == ReviewAction.WHITELIST:
                self._add_to_whitelist(infringement.product_id, infringement.source_url)

            payload = {
                "actor_id": actor_id,
                "action": action.value,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "ip_address": context.ip_address,
                "user_agent": context.user_agent,
                "transitioned_at": now.isoformat(),
            }
            jobs = [
                self.outbox.enqueue(job_type, infringement_id, payload)
                for job_type in ACTION_JOBS[action]
            ]

            self.db.commit()
        except TransitionConflictError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Transition {action.value} on {infringement_id} failed: {e}")
            raise PersistenceError(f"Failed to persist transition for {infringement_id}") from e

        logger.info(f"Infringement {infringement_id}: {from_status.value} -> {to_status.value} ({action.value} by {actor_id})")

        return TransitionResult(
            infringement_id=infringement_id,
            action=action.value,
            from_status=from_status,
            to_status=to_status,
            transition_id=log_entry.id,
            changed_at=now,
            evidence_status="in_progress" if action == ReviewAction.VERIFY else "not_applicable",
            jobs=[job.id for job in jobs],
        )

    def system_transition(
        self,
        infringement: InfringementDB,
        event: str,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        triggered_by: TriggeredBy = TriggeredBy.SYSTEM,
    ) -> Optional[StatusTransitionDB]:
        """
        Apply a system-triggered transition inside the caller's transaction.

        Returns None when the record is not in a state the event applies to.
        Does not commit.
        """
        if event not in SYSTEM_TRANSITIONS:
            raise ValidationError(f"Unknown system event: {event}")

        allowed_from, to_status = SYSTEM_TRANSITIONS[event]
        from_status = InfringementStatus(infringement.status)
        if from_status not in allowed_from:
            return None

        now = utcnow()
        self._compare_and_swap(infringement.id, from_status, {
            "status": to_status,
            "previous_status": from_status,
            "status_changed_at": now,
            "updated_at": now,
        })

        log_entry = StatusTransitionDB(
            id=str(uuid4()),
            infringement_id=infringement.id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            triggered_by=triggered_by,
            event_metadata={"event": event, **(metadata or {})},
            created_at=now,
        )
        self.db.add(log_entry)
        logger.info(f"Infringement {infringement.id}: {from_status.value} -> {to_status.value} ({event})")
        return log_entry

    def reopen(self, infringement_id: str, actor_id: str, reason: Optional[str] = None) -> StatusTransitionDB:
        """Owner puts a removed infringement back to active when the content reappears. Commits."""
        if not actor_id:
            raise ValidationError("actor_id is required")

        infringement = self.db.get(InfringementDB, infringement_id)
        if infringement is None:
            raise NotFoundError(f"Infringement {infringement_id} not found")
        if not self.authorizer.owns_product(actor_id, infringement):
            raise AuthorizationError(f"User {actor_id} does not own the product for infringement {infringement_id}")

        from_status = InfringementStatus(infringement.status)
        if from_status not in SYSTEM_TRANSITIONS["reopen"][0]:
            raise InvalidTransitionError(from_status.value, "reopen")

        try:
            log_entry = self.system_transition(
                infringement,
                "reopen",
                reason=reason or "User reopened: content reappeared",
                metadata={"user_id": actor_id},
                triggered_by=TriggeredBy.USER,
            )
            self.db.commit()
        except TransitionConflictError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to reopen {infringement_id}") from e

        return log_entry

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _compare_and_swap(self, infringement_id: str, expected: InfringementStatus, values: Dict[str, Any]) -> None:
        result = self.db.execute(
            update(InfringementDB)
            .where(InfringementDB.id == infringement_id, InfringementDB.status == expected)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise TransitionConflictError(
                f"Infringement {infringement_id} is no longer {expected.value}; transition not applied"
            )

    def _add_to_whitelist(self, product_id: str, url: str) -> None:
        product = (
            self.db.query(ProductDB)
            .filter(ProductDB.id == product_id)
            .with_for_update()
            .one()
        )
        urls = list(product.whitelist_urls or [])
        if url not in urls:
            # Reassign so the JSON column is flagged dirty
            product.whitelist_urls = urls + [url]
