"""
ProductGuard Enforcement Core - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Boolean,
    Index, UniqueConstraint, Enum as SQLEnum, event, inspect, text,
)
from sqlalchemy.orm import relationship

from ..database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how every DateTime column is stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC. Naive values are assumed UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls):
    """Persist enum values (not member names) so rows read like the API."""
    return SQLEnum(enum_cls, values_callable=lambda members: [m.value for m in members])


# =============================================================================
# ENUMS
# =============================================================================

class InfringementStatus(str, Enum):
    """Lifecycle status of a detected infringement."""
    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    FALSE_POSITIVE = "false_positive"
    ARCHIVED = "archived"
    TAKEDOWN_SENT = "takedown_sent"
    DISPUTED = "disputed"
    REMOVED = "removed"


TERMINAL_STATUSES = frozenset({
    InfringementStatus.REMOVED,
    InfringementStatus.ARCHIVED,
    InfringementStatus.FALSE_POSITIVE,
})

# Verified and not yet resolved; enforcement actions may be drafted and sent
ENFORCEABLE_STATUSES = frozenset({
    InfringementStatus.ACTIVE,
    InfringementStatus.TAKEDOWN_SENT,
    InfringementStatus.DISPUTED,
})


class Priority(str, Enum):
    """Priority tier. P0 is most urgent."""
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"


class ReviewAction(str, Enum):
    """Reviewer decisions accepted by the lifecycle state machine."""
    VERIFY = "verify"
    REJECT = "reject"
    WHITELIST = "whitelist"


class TriggeredBy(str, Enum):
    """Who caused a status transition."""
    SYSTEM = "system"
    USER = "user"


class ActionType(str, Enum):
    """Enforcement action types."""
    DMCA_PLATFORM = "dmca_platform"
    DMCA_HOST = "dmca_host"
    DMCA_CDN = "dmca_cdn"
    GOOGLE_DEINDEX = "google_deindex"
    BING_DEINDEX = "bing_deindex"
    PAYMENT_COMPLAINT = "payment_complaint"
    CEASE_DESIST = "cease_desist"
    MARKETPLACE_REPORT = "marketplace_report"


class EnforcementStatus(str, Enum):
    """Enforcement action status."""
    DRAFT = "draft"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    REMOVED = "removed"
    NO_RESPONSE = "no_response"
    FAILED = "failed"


ACTIVE_ENFORCEMENT_STATUSES = frozenset({
    EnforcementStatus.DRAFT,
    EnforcementStatus.SENT,
    EnforcementStatus.ACKNOWLEDGED,
})


class NoticeTone(str, Enum):
    """Tone of the notice attached to an enforcement action."""
    FRIENDLY = "friendly"
    FIRM = "firm"
    NUCLEAR = "nuclear"


class TimestampStatus(str, Enum):
    """Notarization proof status. Eventually consistent."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class JobType(str, Enum):
    """Outbox job types written alongside a status transition."""
    EVIDENCE_SNAPSHOT = "evidence_snapshot"
    FEEDBACK = "feedback"
    CRM_EVENT = "crm_event"


class JobStatus(str, Enum):
    """Outbox job status."""
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# USERS & PRODUCTS
# =============================================================================

class UserDB(Base):
    """User account. Owns products and reviews their infringements."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255))  # bcrypt; null for service accounts
    role = Column(String(20), default="user")
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    products = relationship("ProductDB", back_populates="user", cascade="all, delete-orphan")


class ProductDB(Base):
    """Protected product. Ownership is the authorization anchor for reviews."""
    __tablename__ = "products"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    original_text = Column(Text, nullable=True)  # Reference copy for AI comparison

    # URLs the owner has approved; never re-detected. Set semantics.
    whitelist_urls = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    user = relationship("UserDB", back_populates="products")
    infringements = relationship("InfringementDB", back_populates="product", cascade="all, delete-orphan")


# =============================================================================
# INFRINGEMENTS
# =============================================================================

class InfringementDB(Base):
    """
    A detected instance of potential infringement.
    Created by the detection collaborator in pending_verification.
    """
    __tablename__ = "infringements"

    id = Column(String(36), primary_key=True)  # UUID
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Source
    source_url = Column(String(2048), nullable=False)
    platform = Column(String(50), nullable=False)
    match_type = Column(String(50), nullable=True)  # exact_hash, keyword, phrase, ...

    # Lifecycle (written only through the state machine)
    status = Column(_enum(InfringementStatus), nullable=False, default=InfringementStatus.PENDING_VERIFICATION, index=True)
    previous_status = Column(_enum(InfringementStatus), nullable=True)
    status_changed_at = Column(DateTime, nullable=True)

    # Scoring
    priority = Column(_enum(Priority), nullable=False, default=Priority.P2, index=True)
    severity_score = Column(Integer, nullable=False, default=0)
    scoring_breakdown = Column(JSON, nullable=True)
    match_confidence = Column(Float, nullable=False, default=0.0)
    audience_count = Column(Integer, nullable=False, default=0)
    monetization_detected = Column(Boolean, nullable=False, default=False)
    estimated_revenue_loss = Column(Float, nullable=False, default=0.0)

    # Opaque payloads validated at ingestion
    infrastructure = Column(JSON, nullable=True)  # country, hosting_provider, registrar, cdn, ip_addresses
    evidence = Column(JSON, nullable=True)        # matches, matched_excerpts, page_title

    # Scheduling
    first_seen_at = Column(DateTime, default=utcnow)
    last_seen_at = Column(DateTime, default=utcnow)
    next_check_at = Column(DateTime, nullable=True, index=True)

    # Verification
    verified_by_user_id = Column(String(36), nullable=True)
    verified_by_user_at = Column(DateTime, nullable=True)
    evidence_snapshot_id = Column(String(36), nullable=True)  # Set once, link only

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    product = relationship("ProductDB", back_populates="infringements")
    transitions = relationship(
        "StatusTransitionDB",
        back_populates="infringement",
        order_by="StatusTransitionDB.created_at",
        passive_deletes=True,
    )
    enforcement_actions = relationship("EnforcementActionDB", back_populates="infringement", passive_deletes=True)


class FeedbackReceiptDB(Base):
    """
    One row per feedback job whose increments were applied.
    Written in the same transaction as the pattern updates, so a redelivered
    job finds its receipt and changes nothing.
    """
    __tablename__ = "feedback_receipts"

    job_id = Column(String(36), primary_key=True)
    infringement_id = Column(String(36), ForeignKey("infringements.id", ondelete="CASCADE"), nullable=False, index=True)
    outcome = Column(String(20), nullable=False)
    applied_at = Column(DateTime, default=utcnow)


class StatusTransitionDB(Base):
    """
    Immutable log of infringement status transitions.
    Append-only - never updated, never deleted.
    """
    __tablename__ = "status_transitions"

    id = Column(String(36), primary_key=True)  # UUID
    infringement_id = Column(String(36), ForeignKey("infringements.id", ondelete="CASCADE"), nullable=False, index=True)

    from_status = Column(_enum(InfringementStatus), nullable=True)
    to_status = Column(_enum(InfringementStatus), nullable=False)
    reason = Column(Text, nullable=False)
    triggered_by = Column(_enum(TriggeredBy), nullable=False)

    # Event Metadata (renamed from 'metadata' which is reserved in SQLAlchemy)
    event_metadata = Column(JSON, nullable=True)

    # Timestamps (immutable)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    infringement = relationship("InfringementDB", back_populates="transitions")


# =============================================================================
# EVIDENCE
# =============================================================================

class EvidenceSnapshotDB(Base):
    """
    Tamper-evident evidence captured when a reviewer verifies an infringement.

    Immutable after insert except:
    - ai_evidence_analysis / ai_analyzed_at (additive patch, set once)
    - timestamp_proof / timestamp_status (notarization upgrade)
    """
    __tablename__ = "evidence_snapshots"

    id = Column(String(36), primary_key=True)  # UUID
    infringement_id = Column(String(36), ForeignKey("infringements.id", ondelete="CASCADE"), nullable=False, unique=True)
    user_id = Column(String(36), nullable=False, index=True)

    # Integrity anchor
    content_hash = Column(String(64), nullable=False, index=True)
    canonical_evidence = Column(Text, nullable=False)  # Exact bytes that were hashed

    page_url = Column(String(2048), nullable=False)
    page_capture = Column(JSON, nullable=False)  # html_hash, text, links, title, archive_url, captured_at
    infrastructure_snapshot = Column(JSON, nullable=True)
    evidence_matches = Column(JSON, nullable=True)

    # Notarization (eventually consistent)
    timestamp_proof = Column(JSON, nullable=True)
    timestamp_status = Column(_enum(TimestampStatus), nullable=True)

    attestation = Column(JSON, nullable=False)
    chain_of_custody = Column(JSON, nullable=False)

    # Additive AI analysis
    ai_evidence_analysis = Column(JSON, nullable=True)
    ai_analyzed_at = Column(DateTime, nullable=True)

    captured_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)


SNAPSHOT_MUTABLE_COLUMNS = frozenset({
    "ai_evidence_analysis",
    "ai_analyzed_at",
    "timestamp_proof",
    "timestamp_status",
})


# =============================================================================
# ENFORCEMENT
# =============================================================================

class EnforcementActionDB(Base):
    """
    A dispatched notice/request to a specific target with its own deadline.
    At most one active (draft/sent/acknowledged) action per (infringement, action_type).
    """
    __tablename__ = "enforcement_actions"
    __table_args__ = (
        Index(
            "uq_enforcement_active_per_type",
            "infringement_id",
            "action_type",
            unique=True,
            postgresql_where=text("status IN ('draft', 'sent', 'acknowledged')"),
            sqlite_where=text("status IN ('draft', 'sent', 'acknowledged')"),
        ),
    )

    id = Column(String(36), primary_key=True)  # UUID
    infringement_id = Column(String(36), ForeignKey("infringements.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    action_type = Column(_enum(ActionType), nullable=False)
    escalation_step = Column(Integer, nullable=False, default=1)  # 1 = first attempt, 2+ = escalation
    escalated_from_id = Column(String(36), nullable=True)

    target_entity = Column(String(255), nullable=True)   # "Cloudflare", "Namecheap", "Google", ...
    target_contact = Column(String(500), nullable=True)  # abuse email or form URL
    notice_tone = Column(_enum(NoticeTone), nullable=False, default=NoticeTone.FRIENDLY)

    status = Column(_enum(EnforcementStatus), nullable=False, default=EnforcementStatus.DRAFT, index=True)

    sent_at = Column(DateTime, nullable=True)
    response_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    deadline_at = Column(DateTime, nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    infringement = relationship("InfringementDB", back_populates="enforcement_actions")


# =============================================================================
# LEARNING
# =============================================================================

class LearningPatternDB(Base):
    """
    Confidence-weighted signal accumulated from verify/reject outcomes.
    Consumed by scan tuning outside this core.
    """
    __tablename__ = "learning_patterns"
    __table_args__ = (
        UniqueConstraint("product_id", "pattern_type", "pattern_value", "platform", name="uq_learning_pattern"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)

    pattern_type = Column(String(50), nullable=False)  # verified_keyword, false_positive_domain, ...
    pattern_value = Column(String(1024), nullable=False)
    platform = Column(String(50), nullable=False, default="")

    occurrences = Column(Integer, nullable=False, default=0)
    verified_count = Column(Integer, nullable=False, default=0)
    rejected_count = Column(Integer, nullable=False, default=0)
    confidence_score = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime, default=utcnow)
    last_seen_at = Column(DateTime, default=utcnow)


# =============================================================================
# OUTBOX
# =============================================================================

class PipelineJobDB(Base):
    """
    Post-transition work written in the same transaction as the transition.
    Drained by the job worker; at-least-once. A running job whose lease
    has expired belongs to a dead worker and is claimed again.
    """
    __tablename__ = "pipeline_jobs"

    id = Column(String(36), primary_key=True)  # UUID
    job_type = Column(_enum(JobType), nullable=False)
    infringement_id = Column(String(36), ForeignKey("infringements.id", ondelete="CASCADE"), nullable=False, index=True)
    payload = Column(JSON, nullable=True)

    status = Column(_enum(JobStatus), nullable=False, default=JobStatus.PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    available_at = Column(DateTime, default=utcnow, index=True)
    claimed_at = Column(DateTime, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True, index=True)  # running jobs past this are reclaimable
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)


# =============================================================================
# IMMUTABILITY GUARDS
# =============================================================================

@event.listens_for(StatusTransitionDB, "before_update")
def _refuse_transition_update(mapper, connection, target):
    raise PermissionError("status_transitions is append-only")


@event.listens_for(StatusTransitionDB, "before_delete")
def _refuse_transition_delete(mapper, connection, target):
    raise PermissionError("status_transitions is append-only")


@event.listens_for(EvidenceSnapshotDB, "before_update")
def _refuse_snapshot_mutation(mapper, connection, target):
    state = inspect(target)
    for attr in state.mapper.column_attrs:
        if attr.key in SNAPSHOT_MUTABLE_COLUMNS:
            continue
        if state.attrs[attr.key].history.has_changes():
            raise PermissionError(f"evidence_snapshots.{attr.key} is immutable")
