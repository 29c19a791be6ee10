"""
Evidence Integrity Pipeline

Builds a hashed, optionally notarized, chain-of-custody evidence snapshot
after an infringement is verified. Runs from the job outbox, never inside
the transition request.

Stage order: capture (+ CRM event in parallel) -> canonical hash ->
notarize -> attestation -> custody chain -> persist -> AI patch.

Only hashing and persistence must succeed. Every other stage degrades.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import (
    InfringementDB, ProductDB, EvidenceSnapshotDB, TimestampStatus, utcnow,
)
from ...models.evidence import (
    ATTESTATION_STATEMENT, SCANNER_USER_AGENT,
    Attestation, CustodyAction, CustodyEvent, PageCapture,
    build_canonical_evidence, compute_attestation_signature, compute_content_hash,
)
from ..errors import NotFoundError, PersistenceError
from .collaborators import PageCapturer, Notarizer, ContentComparer, EventSink

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    infringement_id: str
    snapshot_id: str
    content_hash: str
    created: bool
    timestamp_status: Optional[str] = None
    page_captured: bool = False
    ai_analyzed: bool = False
    degraded_stages: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "infringement_id": self.infringement_id,
            "snapshot_id": self.snapshot_id,
            "content_hash": self.content_hash,
            "created": self.created,
            "timestamp_status": self.timestamp_status,
            "page_captured": self.page_captured,
            "ai_analyzed": self.ai_analyzed,
            "degraded_stages": self.degraded_stages,
        }


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class EvidencePipeline:
    """
    Evidence snapshot builder.

    Idempotent per infringement: a second run returns the linked snapshot.
    """

    def __init__(
        self,
        db: Session,
        page_capture: PageCapturer,
        notarizer: Notarizer,
        comparer: Optional[ContentComparer],
        crm: EventSink,
        timeout_seconds: float = config.EXTERNAL_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.page_capture = page_capture
        self.notarizer = notarizer
        self.comparer = comparer
        self.crm = crm
        self.timeout_seconds = timeout_seconds

    def run(self, infringement_id: str, payload: Optional[Dict[str, Any]] = None) -> PipelineResult:
        payload = payload or {}
        infringement = self.db.get(InfringementDB, infringement_id)
        if infringement is None:
            raise NotFoundError(f"Infringement {infringement_id} not found")

        existing = self._existing_snapshot(infringement)
        if existing is not None:
            logger.info(f"Snapshot {existing.id} already exists for {infringement_id}; skipping")
            return PipelineResult(
                infringement_id=infringement_id,
                snapshot_id=existing.id,
                content_hash=existing.content_hash,
                created=False,
                timestamp_status=existing.timestamp_status.value if existing.timestamp_status else None,
                page_captured=bool((existing.page_capture or {}).get("html_hash")),
                ai_analyzed=existing.ai_evidence_analysis is not None,
            )

        actor_id = payload.get("actor_id") or infringement.verified_by_user_id or infringement.user_id
        verified_at = (
            _parse_timestamp(payload.get("transitioned_at"))
            or infringement.verified_by_user_at
            or utcnow()
        )
        degraded = []

        # One worker per stage
        executor = ThreadPoolExecutor(max_workers=3, thread_name_prefix="evidence")
        try:
            # Steps 1 + 2: capture and CRM event are independent
            capture_future = executor.submit(self.page_capture.capture, infringement.source_url)
            crm_future = executor.submit(self.crm.track, "infringement_verified", {
                "infringement_id": infringement.id,
                "user_id": actor_id,
                "platform": infringement.platform,
                "severity_score": infringement.severity_score,
                "priority": infringement.priority.value if infringement.priority else None,
            })

            capture = self._bounded("page_capture", capture_future, degraded)
            if capture is None:
                capture = PageCapture.empty(utcnow())
            self._bounded("crm", crm_future, degraded)

            # Step 3: integrity anchor
            canonical = build_canonical_evidence(
                source_url=infringement.source_url,
                infrastructure=infringement.infrastructure,
                evidence=infringement.evidence,
                page_html_hash=capture.html_hash,
                page_text_length=len(capture.text),
                page_link_count=len(capture.links),
                archive_url=capture.archive_url,
                verified_at=verified_at,
            )
            content_hash = compute_content_hash(canonical)

            # Step 4: notarization
            proof = self._bounded("notarization", executor.submit(self.notarizer.notarize, content_hash), degraded)
            if proof is not None and proof.status == TimestampStatus.FAILED.value:
                degraded.append("notarization")
                proof = None
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        # Step 5: attestation
        attestation = Attestation(
            statement=ATTESTATION_STATEMENT,
            attested_by=actor_id,
            attested_at=verified_at,
            signature=compute_attestation_signature(canonical, actor_id, verified_at),
        )

        # Step 6: chain of custody
        custody = self._build_custody(infringement, capture, actor_id, verified_at, payload)

        # Step 7: persist + back-link
        snapshot = EvidenceSnapshotDB(
            id=str(uuid4()),
            infringement_id=infringement.id,
            user_id=actor_id,
            content_hash=content_hash,
            canonical_evidence=canonical,
            page_url=infringement.source_url,
            page_capture=capture.to_dict(),
            infrastructure_snapshot=infringement.infrastructure,
            evidence_matches=infringement.evidence,
            timestamp_proof=proof.to_dict() if proof else None,
            timestamp_status=TimestampStatus(proof.status) if proof else None,
            attestation=attestation.to_dict(),
            chain_of_custody=[event.to_dict() for event in custody],
            captured_at=capture.captured_at,
            created_at=utcnow(),
        )
        snapshot, created = self._persist(infringement, snapshot)
        if not created:
            # Lost a race to another worker; its snapshot stands
            return PipelineResult(
                infringement_id=infringement_id,
                snapshot_id=snapshot.id,
                content_hash=snapshot.content_hash,
                created=False,
            )

        logger.info(f"Evidence snapshot {snapshot.id} created for {infringement_id} (hash {content_hash[:12]})")

        # Step 8: additive AI analysis
        ai_analyzed = self._analyze(infringement, snapshot, capture, degraded)

        return PipelineResult(
            infringement_id=infringement_id,
            snapshot_id=snapshot.id,
            content_hash=content_hash,
            created=True,
            timestamp_status=proof.status if proof else None,
            page_captured=capture.succeeded,
            ai_analyzed=ai_analyzed,
            degraded_stages=degraded,
        )

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _bounded(self, stage: str, future, degraded: List[str]):
        """Wait for a best-effort stage. Timeout or error degrades that stage only."""
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            future.cancel()
            logger.warning(f"Evidence stage {stage} timed out after {self.timeout_seconds}s")
        except Exception as e:
            logger.warning(f"Evidence stage {stage} failed: {e}")
        degraded.append(stage)
        return None

    def _build_custody(
        self,
        infringement: InfringementDB,
        capture: PageCapture,
        actor_id: str,
        verified_at: datetime,
        payload: Dict[str, Any],
    ) -> List[CustodyEvent]:
        events = [
            CustodyEvent(
                action=CustodyAction.INFRINGEMENT_DETECTED,
                performed_by="system",
                performed_at=infringement.first_seen_at or infringement.created_at or verified_at,
                user_agent=SCANNER_USER_AGENT,
                details={"platform": infringement.platform, "match_type": infringement.match_type},
            ),
        ]
        if capture.succeeded:
            events.append(CustodyEvent(
                action=CustodyAction.PAGE_CAPTURED,
                performed_by="system",
                performed_at=capture.captured_at,
                user_agent=SCANNER_USER_AGENT,
                details={"html_hash": capture.html_hash, "archive_url": capture.archive_url},
            ))
        events.append(CustodyEvent(
            action=CustodyAction.USER_VERIFIED,
            performed_by=actor_id,
            performed_at=verified_at,
            ip_address=payload.get("ip_address"),
            user_agent=payload.get("user_agent"),
        ))
        return events

    def _existing_snapshot(self, infringement: InfringementDB) -> Optional[EvidenceSnapshotDB]:
        if infringement.evidence_snapshot_id:
            snapshot = self.db.get(EvidenceSnapshotDB, infringement.evidence_snapshot_id)
            if snapshot is not None:
                return snapshot
        return (
            self.db.query(EvidenceSnapshotDB)
            .filter(EvidenceSnapshotDB.infringement_id == infringement.id)
            .first()
        )

    def _persist(self, infringement: InfringementDB, snapshot: EvidenceSnapshotDB) -> Tuple[EvidenceSnapshotDB, bool]:
        """Insert the snapshot and set the back-link (only if unset) in one transaction."""
        infringement_id = infringement.id
        try:
            self.db.add(snapshot)
            self.db.flush()
            self.db.execute(
                update(InfringementDB)
                .where(InfringementDB.id == infringement_id, InfringementDB.evidence_snapshot_id.is_(None))
                .values(evidence_snapshot_id=snapshot.id)
                .execution_options(synchronize_session="fetch")
            )
            self.db.commit()
            return snapshot, True
        except IntegrityError:
            self.db.rollback()
            existing = (
                self.db.query(EvidenceSnapshotDB)
                .filter(EvidenceSnapshotDB.infringement_id == infringement_id)
                .first()
            )
            if existing is None:
                raise PersistenceError(f"Failed to persist evidence snapshot for {infringement_id}")
            logger.info(f"Concurrent snapshot {existing.id} won for {infringement_id}")
            return existing, False
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to persist evidence snapshot for {infringement_id}: {e}")
            raise PersistenceError(f"Failed to persist evidence snapshot for {infringement_id}") from e

    def _analyze(
        self,
        infringement: InfringementDB,
        snapshot: EvidenceSnapshotDB,
        capture: PageCapture,
        degraded: List[str],
    ) -> bool:
        if self.comparer is None or not capture.text:
            return False

        original_text = (
            self.db.query(ProductDB.original_text)
            .filter(ProductDB.id == infringement.product_id)
            .scalar()
        )
        if not original_text:
            return False

        try:
            matches = self.comparer.compare(original_text, capture.text)
            result = self.db.execute(
                update(EvidenceSnapshotDB)
                .where(EvidenceSnapshotDB.id == snapshot.id, EvidenceSnapshotDB.ai_evidence_analysis.is_(None))
                .values(ai_evidence_analysis={"matches": matches, "match_count": len(matches)}, ai_analyzed_at=utcnow())
                .execution_options(synchronize_session="fetch")
            )
            self.db.commit()
            return result.rowcount == 1
        except Exception as e:
            self.db.rollback()
            degraded.append("ai_analysis")
            logger.warning(f"AI analysis failed for snapshot {snapshot.id}; snapshot kept: {e}")
            return False


# =============================================================================
# INTEGRITY CHECK
# =============================================================================

def verify_snapshot_integrity(snapshot: EvidenceSnapshotDB) -> Dict[str, Any]:
    """Recompute the content hash and attestation signature from stored canonical inputs."""
    computed_hash = compute_content_hash(snapshot.canonical_evidence)
    attestation = snapshot.attestation or {}

    signature_valid = False
    attested_at = attestation.get("attested_at")
    if attested_at and attestation.get("attested_by"):
        # Stored as ISO-8601 with a Z suffix
        expected = compute_attestation_signature(
            snapshot.canonical_evidence,
            attestation["attested_by"],
            datetime.fromisoformat(attested_at.rstrip("Z")),
        )
        signature_valid = expected == attestation.get("signature")

    return {
        "snapshot_id": snapshot.id,
        "stored_hash": snapshot.content_hash,
        "computed_hash": computed_hash,
        "hash_valid": computed_hash == snapshot.content_hash,
        "signature_valid": signature_valid,
        "valid": computed_hash == snapshot.content_hash and signature_valid,
    }
