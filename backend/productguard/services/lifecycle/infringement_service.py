"""
Infringement Service

Ingestion boundary for detection signals and read access to the audit trail.
Signals are validated into typed contracts here so nothing downstream has to
guess at the shape of evidence or infrastructure payloads.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import (
    InfringementDB, ProductDB, StatusTransitionDB,
    InfringementStatus, TriggeredBy, TERMINAL_STATUSES, utcnow,
)
from ...models.signals import DetectionSignal
from ..errors import NotFoundError, PersistenceError, WhitelistedUrlError
from ..scoring import PriorityScorer, ScoringInputs, parse_audience_count

logger = logging.getLogger(__name__)


class InfringementService:
    """Creates infringement records from detection signals."""

    def __init__(self, db: Session, scorer: Optional[PriorityScorer] = None):
        self.db = db
        self.scorer = scorer or PriorityScorer()

    def ingest_candidate(
        self,
        product_id: str,
        signal: Union[DetectionSignal, Dict[str, Any]],
    ) -> Tuple[InfringementDB, bool]:
        """
        Score and persist a candidate in pending_verification.

        Re-detection of a non-terminal record only refreshes last_seen_at.
        Re-detection after a terminal outcome creates a fresh record.

        Returns (infringement, created)
        """
        if not isinstance(signal, DetectionSignal):
            signal = DetectionSignal.parse(signal)

        product = self.db.get(ProductDB, product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")

        if signal.source_url in (product.whitelist_urls or []):
            raise WhitelistedUrlError(f"{signal.source_url} is whitelisted for product {product_id}")

        now = utcnow()
        existing = (
            self.db.query(InfringementDB)
            .filter(
                InfringementDB.product_id == product_id,
                InfringementDB.source_url == signal.source_url,
                InfringementDB.status.notin_(list(TERMINAL_STATUSES)),
            )
            .order_by(InfringementDB.created_at.desc())
            .first()
        )

        try:
            if existing is not None:
                existing.last_seen_at = now
                self.db.commit()
                logger.info(f"Re-detected infringement {existing.id} at {signal.source_url}")
                return existing, False

            audience = signal.audience_count
            if audience is None:
                audience = parse_audience_count(signal.audience_size)

            result = self.scorer.score(ScoringInputs.from_signal(signal, audience))

            infringement = InfringementDB(
                id=str(uuid4()),
                product_id=product_id,
                user_id=product.user_id,
                source_url=signal.source_url,
                platform=signal.platform,
                match_type=signal.match_type,
                status=InfringementStatus.PENDING_VERIFICATION,
                priority=result.priority,
                severity_score=result.severity_score,
                scoring_breakdown=result.breakdown,
                match_confidence=signal.match_confidence,
                audience_count=audience,
                monetization_detected=signal.monetization_detected,
                estimated_revenue_loss=signal.estimated_revenue_loss,
                infrastructure=signal.infrastructure.model_dump(),
                evidence=signal.evidence.model_dump(),
                first_seen_at=now,
                last_seen_at=now,
                next_check_at=self.scorer.calculate_next_check(result.priority, now),
                status_changed_at=now,
                created_at=now,
            )
            self.db.add(infringement)

            self.db.add(StatusTransitionDB(
                id=str(uuid4()),
                infringement_id=infringement.id,
                from_status=None,
                to_status=InfringementStatus.PENDING_VERIFICATION,
                reason="Detected by scan",
                triggered_by=TriggeredBy.SYSTEM,
                event_metadata={
                    "severity_score": result.severity_score,
                    "priority": result.priority.value,
                    "match_type": signal.match_type,
                },
                created_at=now,
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to ingest candidate {signal.source_url}: {e}")
            raise PersistenceError(f"Failed to persist candidate {signal.source_url}") from e

        logger.info(
            f"Ingested infringement {infringement.id} ({result.priority.value}, "
            f"score {result.severity_score}) at {signal.source_url}"
        )
        return infringement, True

    def get_infringement(self, infringement_id: str) -> InfringementDB:
        infringement = self.db.get(InfringementDB, infringement_id)
        if infringement is None:
            raise NotFoundError(f"Infringement {infringement_id} not found")
        return infringement

    def get_transition_history(self, infringement_id: str) -> List[StatusTransitionDB]:
        """Ordered audit trail, oldest first."""
        self.get_infringement(infringement_id)
        return (
            self.db.query(StatusTransitionDB)
            .filter(StatusTransitionDB.infringement_id == infringement_id)
            .order_by(StatusTransitionDB.created_at, StatusTransitionDB.id)
            .all()
        )
