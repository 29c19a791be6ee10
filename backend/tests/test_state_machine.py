"""
Tests for the Infringement Lifecycle State Machine.

Test Coverage:
1. verify / reject / whitelist effects and their audit rows
2. Invalid transitions and authorization write nothing
3. Whitelist set semantics
4. Compare-and-swap conflict detection
5. Outbox jobs written with the transition
6. System-triggered enforcement transitions and dispute
7. Reopening removed records
8. Audit trail immutability
"""
from uuid import uuid4

import pytest


def transitions_for(db, infringement_id):
    from productguard.models.db_models import StatusTransitionDB

    return (
        db.query(StatusTransitionDB)
        .filter(StatusTransitionDB.infringement_id == infringement_id)
        .order_by(StatusTransitionDB.created_at, StatusTransitionDB.id)
        .all()
    )


def jobs_for(db, infringement_id):
    from productguard.models.db_models import PipelineJobDB

    return db.query(PipelineJobDB).filter(PipelineJobDB.infringement_id == infringement_id).all()


# =============================================================================
# TEST: REVIEW ACTIONS
# =============================================================================

class TestReviewActions:
    """Reviewer decisions on pending candidates."""

    def test_verify_moves_to_active_with_one_audit_row(self, db, ingest, owner, state_machine):
        from productguard.models.db_models import InfringementStatus, TriggeredBy

        infringement = ingest()
        before = len(transitions_for(db, infringement.id))

        result = state_machine.transition(infringement.id, "verify", owner.id)

        db.refresh(infringement)
        assert infringement.status == InfringementStatus.ACTIVE
        assert infringement.previous_status == InfringementStatus.PENDING_VERIFICATION
        assert infringement.verified_by_user_id == owner.id
        assert infringement.verified_by_user_at is not None
        assert infringement.status_changed_at is not None

        rows = transitions_for(db, infringement.id)
        assert len(rows) == before + 1
        last = rows[-1]
        assert last.from_status == InfringementStatus.PENDING_VERIFICATION
        assert last.to_status == InfringementStatus.ACTIVE
        assert last.triggered_by == TriggeredBy.USER
        assert last.id == result.transition_id
        assert result.evidence_status == "in_progress"

    def test_reject_moves_to_false_positive(self, db, ingest, owner, state_machine):
        from productguard.models.db_models import InfringementStatus

        infringement = ingest()
        result = state_machine.transition(infringement.id, "reject", owner.id)

        db.refresh(infringement)
        assert infringement.status == InfringementStatus.FALSE_POSITIVE
        assert infringement.verified_by_user_id is None
        assert result.evidence_status == "not_applicable"

    def test_reject_after_verify_is_allowed(self, db, verified, owner, state_machine):
        from productguard.models.db_models import InfringementStatus

        state_machine.transition(verified.id, "reject", owner.id)

        db.refresh(verified)
        assert verified.status == InfringementStatus.FALSE_POSITIVE
        assert verified.previous_status == InfringementStatus.ACTIVE

    def test_whitelist_archives_and_adds_url(self, db, ingest, owner, product, state_machine):
        from productguard.models.db_models import InfringementStatus

        infringement = ingest()
        state_machine.transition(infringement.id, "whitelist", owner.id)

        db.refresh(infringement)
        db.refresh(product)
        assert infringement.status == InfringementStatus.ARCHIVED
        assert product.whitelist_urls == [infringement.source_url]

    def test_whitelisting_same_url_twice_keeps_one_entry(self, db, ingest, owner, product, state_machine):
        """Two records for one URL whitelisted in turn leave a single whitelist entry."""
        from productguard.models.db_models import InfringementDB, InfringementStatus, Priority

        first = ingest()
        duplicate = InfringementDB(
            id=str(uuid4()),
            product_id=product.id,
            user_id=owner.id,
            source_url=first.source_url,
            platform="telegram",
            status=InfringementStatus.PENDING_VERIFICATION,
            priority=Priority.P2,
        )
        db.add(duplicate)
        db.commit()

        state_machine.transition(first.id, "whitelist", owner.id)
        state_machine.transition(duplicate.id, "whitelist", owner.id)

        db.refresh(product)
        assert product.whitelist_urls == [first.source_url]

    def test_whitelisted_url_is_refused_at_ingestion(self, db, ingest, owner, state_machine):
        from productguard.services.errors import WhitelistedUrlError

        infringement = ingest()
        state_machine.transition(infringement.id, "whitelist", owner.id)

        with pytest.raises(WhitelistedUrlError):
            ingest()


# =============================================================================
# TEST: REJECTIONS WRITE NOTHING
# =============================================================================

class TestRejectedTransitions:
    """Validation and authorization fail before any write."""

    def test_unknown_action(self, db, ingest, owner, state_machine):
        from productguard.services.errors import ValidationError

        infringement = ingest()
        with pytest.raises(ValidationError):
            state_machine.transition(infringement.id, "escalate", owner.id)
        assert len(transitions_for(db, infringement.id)) == 1

    def test_missing_actor(self, ingest, state_machine):
        from productguard.services.errors import ValidationError

        infringement = ingest()
        with pytest.raises(ValidationError):
            state_machine.transition(infringement.id, "verify", "")

    def test_missing_record(self, owner, state_machine):
        from productguard.services.errors import NotFoundError

        with pytest.raises(NotFoundError):
            state_machine.transition(str(uuid4()), "verify", owner.id)

    def test_non_owner_is_refused(self, db, ingest, stranger, state_machine):
        from productguard.models.db_models import InfringementStatus
        from productguard.services.errors import AuthorizationError

        infringement = ingest()
        with pytest.raises(AuthorizationError):
            state_machine.transition(infringement.id, "verify", stranger.id)

        db.refresh(infringement)
        assert infringement.status == InfringementStatus.PENDING_VERIFICATION
        assert len(transitions_for(db, infringement.id)) == 1
        assert jobs_for(db, infringement.id) == []

    def test_terminal_record_cannot_be_reviewed_again(self, db, ingest, owner, state_machine):
        from productguard.services.errors import InvalidTransitionError

        infringement = ingest()
        state_machine.transition(infringement.id, "reject", owner.id)
        count = len(transitions_for(db, infringement.id))

        with pytest.raises(InvalidTransitionError) as exc:
            state_machine.transition(infringement.id, "verify", owner.id)

        assert exc.value.from_status == "false_positive"
        assert len(transitions_for(db, infringement.id)) == count

    def test_verify_twice_is_invalid(self, verified, owner, state_machine):
        from productguard.services.errors import InvalidTransitionError

        with pytest.raises(InvalidTransitionError):
            state_machine.transition(verified.id, "verify", owner.id)


# =============================================================================
# TEST: CONCURRENCY
# =============================================================================

class TestCompareAndSwap:
    """A status change between read and write is detected, not overwritten."""

    def test_conflicting_status_change_raises_and_rolls_back(self, db, ingest, owner):
        from sqlalchemy import update
        from productguard.models.db_models import InfringementDB, InfringementStatus
        from productguard.services.errors import TransitionConflictError
        from productguard.services.lifecycle import InfringementStateMachine

        infringement = ingest()

        class RacingAuthorizer:
            """Another writer moves the record after it was read."""

            def owns_product(self, actor_id, record):
                db.execute(
                    update(InfringementDB)
                    .where(InfringementDB.id == record.id)
                    .values(status=InfringementStatus.FALSE_POSITIVE)
                    .execution_options(synchronize_session=False)
                )
                return True

        machine = InfringementStateMachine(db, RacingAuthorizer())

        with pytest.raises(TransitionConflictError):
            machine.transition(infringement.id, "verify", owner.id)

        assert len(transitions_for(db, infringement.id)) == 1
        assert jobs_for(db, infringement.id) == []


# =============================================================================
# TEST: OUTBOX
# =============================================================================

class TestOutboxJobs:
    """Post-transition work is queued in the same transaction."""

    def test_verify_queues_feedback_crm_and_evidence(self, db, ingest, owner, state_machine):
        from productguard.models.db_models import JobStatus, JobType

        infringement = ingest()
        result = state_machine.transition(
            infringement.id, "verify", owner.id,
        )

        jobs = jobs_for(db, infringement.id)
        assert {j.job_type for j in jobs} == {JobType.FEEDBACK, JobType.CRM_EVENT, JobType.EVIDENCE_SNAPSHOT}
        assert all(j.status == JobStatus.PENDING for j in jobs)
        assert sorted(result.jobs) == sorted(j.id for j in jobs)
        assert jobs[0].payload["actor_id"] == owner.id
        assert jobs[0].payload["action"] == "verify"

    def test_reject_does_not_queue_evidence(self, db, ingest, owner, state_machine):
        from productguard.models.db_models import JobType

        infringement = ingest()
        state_machine.transition(infringement.id, "reject", owner.id)

        assert {j.job_type for j in jobs_for(db, infringement.id)} == {JobType.FEEDBACK, JobType.CRM_EVENT}

    def test_request_context_is_carried_into_payload(self, db, ingest, owner, state_machine):
        from productguard.services.lifecycle import TransitionContext

        infringement = ingest()
        state_machine.transition(
            infringement.id, "verify", owner.id,
            TransitionContext(ip_address="203.0.113.7", user_agent="pytest"),
        )

        payload = jobs_for(db, infringement.id)[0].payload
        assert payload["ip_address"] == "203.0.113.7"
        assert payload["user_agent"] == "pytest"


# =============================================================================
# TEST: SYSTEM TRANSITIONS
# =============================================================================

class TestSystemTransitions:
    """Enforcement progress applied inside the caller's transaction."""

    def test_takedown_sent_from_active(self, db, verified, state_machine):
        from productguard.models.db_models import InfringementStatus, TriggeredBy

        entry = state_machine.system_transition(verified, "takedown_sent", reason="Notice sent")
        db.commit()

        db.refresh(verified)
        assert verified.status == InfringementStatus.TAKEDOWN_SENT
        assert entry.triggered_by == TriggeredBy.SYSTEM
        assert entry.event_metadata["event"] == "takedown_sent"

    def test_event_not_applicable_is_a_no_op(self, db, ingest, state_machine):
        from productguard.models.db_models import InfringementStatus

        infringement = ingest()
        assert state_machine.system_transition(infringement, "content_removed", reason="x") is None

        db.refresh(infringement)
        assert infringement.status == InfringementStatus.PENDING_VERIFICATION

    def test_unknown_event(self, verified, state_machine):
        from productguard.services.errors import ValidationError

        with pytest.raises(ValidationError):
            state_machine.system_transition(verified, "teleport", reason="x")

    def test_counter_notice_disputes_a_sent_takedown(self, db, verified, state_machine):
        from productguard.models.db_models import InfringementStatus

        state_machine.system_transition(verified, "takedown_sent", reason="Notice sent")
        entry = state_machine.system_transition(verified, "counter_notice", reason="Uploader disputed")
        db.commit()

        db.refresh(verified)
        assert verified.status == InfringementStatus.DISPUTED
        assert verified.previous_status == InfringementStatus.TAKEDOWN_SENT
        assert entry.event_metadata["event"] == "counter_notice"

    def test_review_map_lookup(self):
        from productguard.models.db_models import InfringementStatus, ReviewAction
        from productguard.services.lifecycle import can_transition

        assert can_transition(InfringementStatus.PENDING_VERIFICATION, ReviewAction.VERIFY)
        assert can_transition(InfringementStatus.ACTIVE, ReviewAction.WHITELIST)
        assert not can_transition(InfringementStatus.ACTIVE, ReviewAction.VERIFY)
        assert not can_transition(InfringementStatus.TAKEDOWN_SENT, ReviewAction.REJECT)


# =============================================================================
# TEST: REOPEN
# =============================================================================

class TestReopen:
    """Removed content that reappears goes back to active, audited."""

    def removed(self, db, verified, state_machine):
        state_machine.system_transition(verified, "content_removed", reason="Host removed it")
        db.commit()
        db.refresh(verified)
        return verified

    def test_reopen_removed_record(self, db, verified, owner, state_machine):
        from productguard.models.db_models import InfringementStatus, TriggeredBy

        infringement = self.removed(db, verified, state_machine)
        before = len(transitions_for(db, infringement.id))

        entry = state_machine.reopen(infringement.id, owner.id)

        db.refresh(infringement)
        assert infringement.status == InfringementStatus.ACTIVE
        assert infringement.previous_status == InfringementStatus.REMOVED
        rows = transitions_for(db, infringement.id)
        assert len(rows) == before + 1
        assert entry.from_status == InfringementStatus.REMOVED
        assert entry.to_status == InfringementStatus.ACTIVE
        assert entry.triggered_by == TriggeredBy.USER
        assert entry.event_metadata == {"event": "reopen", "user_id": owner.id}

    def test_custom_reason_is_recorded(self, db, verified, owner, state_machine):
        infringement = self.removed(db, verified, state_machine)
        entry = state_machine.reopen(infringement.id, owner.id, reason="Reuploaded under a new handle")
        assert entry.reason == "Reuploaded under a new handle"

    def test_only_removed_records_reopen(self, db, verified, owner, state_machine):
        from productguard.models.db_models import InfringementStatus
        from productguard.services.errors import InvalidTransitionError

        before = len(transitions_for(db, verified.id))
        with pytest.raises(InvalidTransitionError):
            state_machine.reopen(verified.id, owner.id)

        db.refresh(verified)
        assert verified.status == InfringementStatus.ACTIVE
        assert len(transitions_for(db, verified.id)) == before

    def test_non_owner_cannot_reopen(self, db, verified, stranger, state_machine):
        from productguard.models.db_models import InfringementStatus
        from productguard.services.errors import AuthorizationError

        infringement = self.removed(db, verified, state_machine)
        with pytest.raises(AuthorizationError):
            state_machine.reopen(infringement.id, stranger.id)

        db.refresh(infringement)
        assert infringement.status == InfringementStatus.REMOVED


# =============================================================================
# TEST: AUDIT TRAIL
# =============================================================================

class TestAuditTrail:
    """status_transitions is append-only."""

    def test_history_is_ordered_and_complete(self, db, verified, owner, state_machine):
        from productguard.models.db_models import InfringementStatus
        from productguard.services.lifecycle import InfringementService

        state_machine.transition(verified.id, "reject", owner.id)
        history = InfringementService(db).get_transition_history(verified.id)

        assert [(t.from_status, t.to_status) for t in history] == [
            (None, InfringementStatus.PENDING_VERIFICATION),
            (InfringementStatus.PENDING_VERIFICATION, InfringementStatus.ACTIVE),
            (InfringementStatus.ACTIVE, InfringementStatus.FALSE_POSITIVE),
        ]

    def test_audit_rows_cannot_be_updated(self, db, verified):
        row = transitions_for(db, verified.id)[-1]
        row.reason = "rewritten"

        with pytest.raises(PermissionError):
            db.flush()
        db.rollback()

    def test_audit_rows_cannot_be_deleted(self, db, verified):
        row = transitions_for(db, verified.id)[-1]
        db.delete(row)

        with pytest.raises(PermissionError):
            db.flush()
        db.rollback()
