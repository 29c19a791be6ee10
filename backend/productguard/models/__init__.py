"""ProductGuard Enforcement Core - Data Models"""
from .evidence import (
    CustodyAction, PageCapture, TimestampProof, Attestation, CustodyEvent,
    canonical_json, build_canonical_evidence, compute_content_hash,
    compute_attestation_signature,
)
from .signals import (
    InfrastructureProfile, HashMatchEvidence, TextMatchEvidence, ManualEvidence,
    EvidencePacket, DetectionSignal, parse_evidence,
)

__all__ = [
    # Evidence
    "CustodyAction", "PageCapture", "TimestampProof", "Attestation", "CustodyEvent",
    "canonical_json", "build_canonical_evidence", "compute_content_hash",
    "compute_attestation_signature",
    # Signals
    "InfrastructureProfile", "HashMatchEvidence", "TextMatchEvidence", "ManualEvidence",
    "EvidencePacket", "DetectionSignal", "parse_evidence",
]
