"""
Evidence Services

Tamper-evident evidence snapshots for verified infringements:
- EvidencePipeline: capture, hash, notarize, attest, persist, AI patch
- NotarizationUpgrader: pending -> confirmed/failed proof status
- verify_snapshot_integrity: third-party reproducible hash check
"""

from .collaborators import (
    PageCaptureClient,
    OpenTimestampsClient,
    ContentComparisonClient,
    CrmClient,
)
from .pipeline import EvidencePipeline, PipelineResult, verify_snapshot_integrity
from .notarization import NotarizationUpgrader

__all__ = [
    'PageCaptureClient',
    'OpenTimestampsClient',
    'ContentComparisonClient',
    'CrmClient',
    'EvidencePipeline',
    'PipelineResult',
    'verify_snapshot_integrity',
    'NotarizationUpgrader',
]
