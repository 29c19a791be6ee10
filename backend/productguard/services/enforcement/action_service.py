"""
Enforcement Action Service

Lifecycle of dispatched notices: draft -> sent -> acknowledged/removed/failed.
A counter-notice fails the action and disputes the infringement.
Sent actions carry a deadline derived from the target's response window;
the DeadlineEngine moves unanswered ones to no_response.

At most one active (draft/sent/acknowledged) action per
(infringement, action_type).
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import (
    InfringementDB, EnforcementActionDB,
    ActionType, EnforcementStatus, NoticeTone,
    ACTIVE_ENFORCEMENT_STATUSES, ENFORCEABLE_STATUSES, utcnow, to_naive_utc,
)
from ..errors import (
    ValidationError, DuplicateActionError, NotFoundError, AuthorizationError, PersistenceError,
    TransitionConflictError,
)
from ..lifecycle import InfringementStateMachine, ProductOwnershipAuthorizer
from .escalation import ResponseWindows, DEFAULT_RESPONSE_WINDOWS

logger = logging.getLogger(__name__)


# Allowed response outcomes and the statuses they may follow
RESPONSE_TRANSITIONS = {
    EnforcementStatus.ACKNOWLEDGED: {EnforcementStatus.SENT},
    EnforcementStatus.REMOVED: {EnforcementStatus.SENT, EnforcementStatus.ACKNOWLEDGED, EnforcementStatus.NO_RESPONSE},
    EnforcementStatus.FAILED: {EnforcementStatus.SENT, EnforcementStatus.ACKNOWLEDGED},
}


def _parse_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {field_name}: {value!r}. Must be one of: {allowed}")


class EnforcementActionService:
    """Create, send and settle enforcement actions."""

    def __init__(
        self,
        db: Session,
        state_machine: Optional[InfringementStateMachine] = None,
        response_windows: ResponseWindows = DEFAULT_RESPONSE_WINDOWS,
    ):
        self.db = db
        self.authorizer = ProductOwnershipAuthorizer(db)
        self.state_machine = state_machine or InfringementStateMachine(db, self.authorizer)
        self.response_windows = response_windows

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_action(self, action_id: str) -> EnforcementActionDB:
        action = self.db.get(EnforcementActionDB, action_id)
        if action is None:
            raise NotFoundError(f"Enforcement action {action_id} not found")
        return action

    def find_active(self, infringement_id: str, action_type) -> Optional[EnforcementActionDB]:
        return (
            self.db.query(EnforcementActionDB)
            .filter(
                EnforcementActionDB.infringement_id == infringement_id,
                EnforcementActionDB.action_type == ActionType(action_type),
                EnforcementActionDB.status.in_(list(ACTIVE_ENFORCEMENT_STATUSES)),
            )
            .first()
        )

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def create_action(
        self,
        infringement_id: str,
        user_id: Optional[str],
        action_type,
        target_entity: Optional[str] = None,
        target_contact: Optional[str] = None,
        notice_tone=NoticeTone.FRIENDLY,
        escalation_step: int = 1,
        escalated_from_id: Optional[str] = None,
        commit: bool = True,
    ) -> EnforcementActionDB:
        """
        Create a draft action.

        user_id None means a system-created draft (escalation); ownership is
        checked for every other caller.
        """
        action_type = _parse_enum(ActionType, action_type, "action_type")
        notice_tone = _parse_enum(NoticeTone, notice_tone, "notice_tone")
        if escalation_step < 1:
            raise ValidationError("escalation_step must be >= 1")

        infringement = self._get_infringement(infringement_id)
        if user_id is not None:
            self._authorize(user_id, infringement)
        self._require_enforceable(infringement)

        existing = self.find_active(infringement_id, action_type)
        if existing is not None:
            raise DuplicateActionError(infringement_id, action_type.value, existing.id)

        now = utcnow()
        action = EnforcementActionDB(
            id=str(uuid4()),
            infringement_id=infringement_id,
            user_id=infringement.user_id,
            action_type=action_type,
            escalation_step=escalation_step,
            escalated_from_id=escalated_from_id,
            target_entity=target_entity,
            target_contact=target_contact,
            notice_tone=notice_tone,
            status=EnforcementStatus.DRAFT,
            created_at=now,
            updated_at=now,
        )
        self.db.add(action)

        if commit:
            try:
                self.db.commit()
            except IntegrityError as e:
                # Partial unique index caught a concurrent insert
                self.db.rollback()
                winner = self.find_active(infringement_id, action_type)
                raise DuplicateActionError(infringement_id, action_type.value, winner.id if winner else "unknown") from e
            except SQLAlchemyError as e:
                self.db.rollback()
                raise PersistenceError(f"Failed to create enforcement action: {e}") from e
            logger.info(f"Created {action_type.value} draft {action.id} (step {escalation_step}) for {infringement_id}")

        return action

    def mark_sent(
        self,
        action_id: str,
        user_id: str,
        sent_at: Optional[datetime] = None,
        deadline_days: Optional[int] = None,
    ) -> EnforcementActionDB:
        """Dispatch a draft: stamps sent_at and deadline_at, moves the infringement to takedown_sent."""
        action = self.get_action(action_id)
        infringement = self._get_infringement(action.infringement_id)
        self._authorize(user_id, infringement)

        if action.status != EnforcementStatus.DRAFT:
            raise ValidationError(f"Action {action_id} is {action.status.value}; only drafts can be sent")
        self._require_enforceable(infringement)
        if deadline_days is not None and deadline_days < 0:
            raise ValidationError("deadline_days must be >= 0")

        sent_at = to_naive_utc(sent_at) or utcnow()
        days = deadline_days if deadline_days is not None else self.response_windows.for_action(action.action_type)

        try:
            action.status = EnforcementStatus.SENT
            action.sent_at = sent_at
            action.deadline_at = sent_at + timedelta(days=days)
            action.updated_at = utcnow()

            self.state_machine.system_transition(
                infringement,
                "takedown_sent",
                reason=f"{action.action_type.value} sent to {action.target_entity or 'target'}",
                metadata={"action_id": action.id, "user_id": user_id},
            )
            self.db.commit()
        except TransitionConflictError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to mark action {action_id} sent: {e}") from e

        logger.info(f"Action {action_id} sent; deadline {action.deadline_at.isoformat()} ({days} days)")
        return action

    def record_response(
        self,
        action_id: str,
        user_id: str,
        outcome,
        responded_at: Optional[datetime] = None,
    ) -> EnforcementActionDB:
        """Record the target's response. removed also marks the infringement removed."""
        outcome = _parse_enum(EnforcementStatus, outcome, "outcome")
        if outcome not in RESPONSE_TRANSITIONS:
            raise ValidationError(f"Invalid outcome: {outcome.value}. Must be acknowledged, removed or failed")

        action = self.get_action(action_id)
        infringement = self._get_infringement(action.infringement_id)
        self._authorize(user_id, infringement)

        if action.status not in RESPONSE_TRANSITIONS[outcome]:
            raise ValidationError(f"Cannot record {outcome.value} for action in {action.status.value}")

        responded_at = to_naive_utc(responded_at) or utcnow()
        try:
            action.status = outcome
            action.response_at = responded_at
            if outcome in (EnforcementStatus.REMOVED, EnforcementStatus.FAILED):
                action.resolved_at = responded_at
            action.updated_at = utcnow()

            if outcome == EnforcementStatus.REMOVED:
                self.state_machine.system_transition(
                    infringement,
                    "content_removed",
                    reason=f"{action.target_entity or 'Target'} removed content after {action.action_type.value}",
                    metadata={"action_id": action.id, "user_id": user_id},
                )
            self.db.commit()
        except TransitionConflictError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to record response for {action_id}: {e}") from e

        logger.info(f"Action {action_id} response recorded: {outcome.value}")
        return action

    def record_counter_notice(
        self,
        action_id: str,
        user_id: str,
        responded_at: Optional[datetime] = None,
    ) -> EnforcementActionDB:
        """
        The target answered with a counter-notice. The action fails and the
        infringement moves from takedown_sent to disputed.
        """
        action = self.get_action(action_id)
        infringement = self._get_infringement(action.infringement_id)
        self._authorize(user_id, infringement)

        if action.status not in RESPONSE_TRANSITIONS[EnforcementStatus.FAILED]:
            raise ValidationError(f"Cannot record a counter-notice for action in {action.status.value}")

        responded_at = to_naive_utc(responded_at) or utcnow()
        try:
            action.status = EnforcementStatus.FAILED
            action.response_at = responded_at
            action.resolved_at = responded_at
            action.updated_at = utcnow()

            self.state_machine.system_transition(
                infringement,
                "counter_notice",
                reason=f"{action.target_entity or 'Target'} filed a counter-notice to {action.action_type.value}",
                metadata={"action_id": action.id, "user_id": user_id},
            )
            self.db.commit()
        except TransitionConflictError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to record counter-notice for {action_id}: {e}") from e

        logger.info(f"Action {action_id} disputed by counter-notice; infringement {infringement.id} is {infringement.status.value}")
        return action

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _get_infringement(self, infringement_id: str) -> InfringementDB:
        infringement = self.db.get(InfringementDB, infringement_id)
        if infringement is None:
            raise NotFoundError(f"Infringement {infringement_id} not found")
        return infringement

    def _authorize(self, user_id: str, infringement: InfringementDB) -> None:
        if not self.authorizer.owns_product(user_id, infringement):
            raise AuthorizationError(f"User {user_id} does not own the product for infringement {infringement.id}")

    def _require_enforceable(self, infringement: InfringementDB) -> None:
        if infringement.status not in ENFORCEABLE_STATUSES:
            raise ValidationError(
                f"Infringement {infringement.id} is {infringement.status.value}; "
                f"enforcement requires a verified, unresolved record"
            )
