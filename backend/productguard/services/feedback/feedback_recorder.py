"""
Feedback Recorder

Turns review outcomes into confidence-weighted learning patterns:
keywords, domains, platforms, hosting providers, countries and match types.
Patterns are read by scan tuning outside this core.

confidence_score = verified_count / occurrences
"""
import logging
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import FeedbackReceiptDB, InfringementDB, LearningPatternDB, ReviewAction, utcnow
from ...models.signals import TextMatchEvidence, parse_evidence
from ..errors import NotFoundError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)


class WhitelistSignal(str, Enum):
    """How a whitelist decision feeds learning."""
    NEUTRAL = "neutral"    # recorded nothing
    NEGATIVE = "negative"  # counted like reject


def extract_domain(url: str) -> Optional[str]:
    netloc = urlparse(url).netloc.lower()
    if netloc.startswith("www."):
        netloc = netloc[4:]
    return netloc or None


def extract_patterns(infringement: InfringementDB) -> List[Tuple[str, str]]:
    """(pattern_type, pattern_value) pairs for an infringement, deduplicated, in a stable order."""
    patterns = []

    if infringement.evidence:
        evidence = parse_evidence(infringement.evidence)
        if isinstance(evidence, TextMatchEvidence):
            for excerpt in evidence.matched_excerpts:
                if excerpt and excerpt.strip():
                    patterns.append(("keyword", excerpt.strip()[:1024]))

    domain = extract_domain(infringement.source_url or "")
    if domain:
        patterns.append(("domain", domain))

    if infringement.platform:
        patterns.append(("platform", infringement.platform))

    infrastructure = infringement.infrastructure or {}
    if infrastructure.get("hosting_provider"):
        patterns.append(("hosting", infrastructure["hosting_provider"]))
    if infrastructure.get("country"):
        patterns.append(("country", infrastructure["country"]))

    if infringement.match_type:
        patterns.append(("match_type", infringement.match_type))

    return list(dict.fromkeys(patterns))


class FeedbackRecorder:
    """Records verify/reject (and optionally whitelist) outcomes as learning patterns."""

    def __init__(self, db: Session, whitelist_signal: str = config.WHITELIST_SIGNAL):
        self.db = db
        self.whitelist_signal = WhitelistSignal(whitelist_signal)

    def record(self, infringement_id: str, outcome, job_id: Optional[str] = None) -> Dict[str, int]:
        """
        Upsert one increment per extracted pattern. Commits.

        With job_id, the increments are applied at most once per job: a
        receipt row commits with them and a repeat call is a no-op.

        Returns counts of patterns created/updated.
        """
        try:
            outcome = ReviewAction(outcome)
        except ValueError:
            raise ValidationError(f"Invalid feedback outcome: {outcome!r}")

        if outcome == ReviewAction.WHITELIST and self.whitelist_signal == WhitelistSignal.NEUTRAL:
            logger.info(f"Whitelist on {infringement_id} treated as neutral; no patterns recorded")
            return {"created": 0, "updated": 0}

        verified = outcome == ReviewAction.VERIFY
        prefix = "verified" if verified else "false_positive"

        infringement = self.db.get(InfringementDB, infringement_id)
        if infringement is None:
            raise NotFoundError(f"Infringement {infringement_id} not found")

        patterns = extract_patterns(infringement)

        # One retry covers a concurrent insert of the same pattern row or receipt
        for attempt in range(2):
            if job_id is not None and self.db.get(FeedbackReceiptDB, job_id) is not None:
                logger.info(f"Feedback job {job_id} for {infringement_id} already applied; skipping")
                return {"created": 0, "updated": 0}
            try:
                counts = self._apply(infringement, prefix, verified, patterns)
                if job_id is not None:
                    self.db.add(FeedbackReceiptDB(
                        job_id=job_id,
                        infringement_id=infringement_id,
                        outcome=outcome.value,
                        applied_at=utcnow(),
                    ))
                self.db.commit()
                break
            except IntegrityError:
                self.db.rollback()
                if attempt == 1:
                    raise PersistenceError(f"Failed to record feedback for {infringement_id}")
            except SQLAlchemyError as e:
                self.db.rollback()
                raise PersistenceError(f"Failed to record feedback for {infringement_id}: {e}") from e

        logger.info(
            f"Learned from {outcome.value} on {infringement_id}: "
            f"{counts['created']} new patterns, {counts['updated']} updated"
        )
        return counts

    def _apply(
        self,
        infringement: InfringementDB,
        prefix: str,
        verified: bool,
        patterns: List[Tuple[str, str]],
    ) -> Dict[str, int]:
        now = utcnow()
        platform = infringement.platform or ""
        counts = {"created": 0, "updated": 0}

        for pattern_type, value in patterns:
            full_type = f"{prefix}_{pattern_type}"
            row = (
                self.db.query(LearningPatternDB)
                .filter(
                    LearningPatternDB.product_id == infringement.product_id,
                    LearningPatternDB.pattern_type == full_type,
                    LearningPatternDB.pattern_value == value,
                    LearningPatternDB.platform == platform,
                )
                .with_for_update()
                .first()
            )

            if row is None:
                row = LearningPatternDB(
                    id=str(uuid4()),
                    product_id=infringement.product_id,
                    user_id=infringement.user_id,
                    pattern_type=full_type,
                    pattern_value=value,
                    platform=platform,
                    occurrences=0,
                    verified_count=0,
                    rejected_count=0,
                    created_at=now,
                )
                self.db.add(row)
                counts["created"] += 1
            else:
                counts["updated"] += 1

            row.occurrences += 1
            if verified:
                row.verified_count += 1
            else:
                row.rejected_count += 1
            row.confidence_score = row.verified_count / row.occurrences
            row.last_seen_at = now
            self.db.flush()

        return counts

    def get_top_patterns(
        self,
        product_id: str,
        pattern_type: str,
        limit: int = 10,
        min_confidence: float = 0.0,
    ) -> List[LearningPatternDB]:
        """Highest-confidence patterns of one type, ties broken by occurrences."""
        return (
            self.db.query(LearningPatternDB)
            .filter(
                LearningPatternDB.product_id == product_id,
                LearningPatternDB.pattern_type == pattern_type,
                LearningPatternDB.confidence_score >= min_confidence,
            )
            .order_by(
                LearningPatternDB.confidence_score.desc(),
                LearningPatternDB.occurrences.desc(),
                LearningPatternDB.last_seen_at.desc(),
            )
            .limit(limit)
            .all()
        )
