"""
Notarization Upgrader

Timestamp proofs start as pending and are confirmed once the calendar has
anchored them in a Bitcoin block. This re-checks pending proofs and records
the new status on the stored proof. Nothing else on the snapshot changes.
"""
import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from ...models.db_models import EvidenceSnapshotDB, TimestampStatus, utcnow
from ...models.evidence import format_timestamp
from ..errors import BestEffortError
from .collaborators import Notarizer

logger = logging.getLogger(__name__)


class NotarizationUpgrader:
    """Periodic pass over pending timestamp proofs."""

    def __init__(self, db: Session, notarizer: Notarizer):
        self.db = db
        self.notarizer = notarizer

    def upgrade_pending(self, limit: int = 100) -> Dict[str, Any]:
        """
        Check every pending proof once.

        Returns summary of checked/confirmed/failed/still_pending counts.
        """
        results = {
            "checked": 0,
            "confirmed": 0,
            "failed": 0,
            "still_pending": 0,
            "errors": [],
        }

        snapshots = (
            self.db.query(EvidenceSnapshotDB)
            .filter(EvidenceSnapshotDB.timestamp_status == TimestampStatus.PENDING)
            .order_by(EvidenceSnapshotDB.created_at)
            .limit(limit)
            .all()
        )

        for snapshot in snapshots:
            results["checked"] += 1
            proof = dict(snapshot.timestamp_proof or {})
            try:
                status = TimestampStatus(self.notarizer.check(proof))
            except (BestEffortError, ValueError) as e:
                # Leave the proof pending; the next pass retries it
                results["still_pending"] += 1
                results["errors"].append({"snapshot_id": snapshot.id, "error": str(e)})
                logger.warning(f"Notarization check failed for snapshot {snapshot.id}: {e}")
                continue

            if status == TimestampStatus.PENDING:
                results["still_pending"] += 1
                continue

            proof["status"] = status.value
            if status == TimestampStatus.CONFIRMED:
                proof["confirmed_at"] = format_timestamp(utcnow())
                results["confirmed"] += 1
            else:
                results["failed"] += 1

            snapshot.timestamp_proof = proof
            snapshot.timestamp_status = status
            logger.info(f"Snapshot {snapshot.id} notarization {status.value}")

        self.db.commit()
        return results
