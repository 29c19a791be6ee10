"""
Evidence Snapshot Contracts

Canonical dataclasses for evidence snapshots.
The content hash is computed from canonical JSON with sort_keys=True and
compact separators so any third party can reproduce it byte-for-byte.
Timestamps are injected, never generated in contracts.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from hashlib import sha256
from typing import Any, Dict, List, Optional
import json


ATTESTATION_STATEMENT = (
    "I have a good faith belief that use of the material in the manner complained of "
    "is not authorized by the copyright owner, its agent, or the law. I swear, under "
    "penalty of perjury, that the information in this evidence record is accurate and "
    "that I am the owner, or authorized to act on behalf of the owner, of the "
    "exclusive right that is allegedly infringed."
)

SCANNER_USER_AGENT = "ProductGuard Scanner"


class CustodyAction(str, Enum):
    """Chain-of-custody event types, in the order they occur."""
    INFRINGEMENT_DETECTED = "infringement_detected"
    PAGE_CAPTURED = "page_captured"
    USER_VERIFIED = "user_verified"


# =============================================================================
# CANONICAL HASHING
# =============================================================================

def canonical_json(data: Dict[str, Any]) -> str:
    """Field-order-stable, whitespace-free JSON used for every evidence hash."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(text: str) -> str:
    return sha256(text.encode("utf-8")).hexdigest()


def format_timestamp(value: datetime) -> str:
    """ISO-8601 with a Z suffix. Naive datetimes are treated as UTC."""
    if value.tzinfo is not None:
        value = value.replace(tzinfo=None) - value.utcoffset()
    return value.isoformat(timespec="milliseconds") + "Z"


def build_canonical_evidence(
    *,
    source_url: str,
    infrastructure: Optional[Dict[str, Any]],
    evidence: Optional[Dict[str, Any]],
    page_html_hash: str,
    page_text_length: int,
    page_link_count: int,
    archive_url: Optional[str],
    verified_at: datetime,
) -> str:
    """Serialize the hashed evidence fields into their canonical string."""
    return canonical_json({
        "source_url": source_url,
        "infrastructure": infrastructure or {},
        "evidence": evidence or {},
        "page_html_hash": page_html_hash,
        "page_text_length": page_text_length,
        "page_link_count": page_link_count,
        "archive_url": archive_url,
        "verified_at": format_timestamp(verified_at),
    })


def compute_content_hash(canonical: str) -> str:
    """SHA-256 of the canonical evidence string. Pure and reproducible."""
    return sha256_hex(canonical)


def compute_attestation_signature(canonical: str, actor_id: str, attested_at: datetime) -> str:
    """Second hash binding the evidence to who attested it and when."""
    return sha256_hex(canonical + actor_id + format_timestamp(attested_at))


# =============================================================================
# COLLABORATOR RESULTS
# =============================================================================

@dataclass
class PageCapture:
    """Live page evidence returned by the page-capture collaborator."""
    html_hash: str
    text: str
    links: List[str]
    captured_at: datetime
    title: Optional[str] = None
    archive_url: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return bool(self.html_hash)

    @classmethod
    def empty(cls, captured_at: datetime) -> "PageCapture":
        """Placeholder used when capture fails or times out."""
        return cls(html_hash="", text="", links=[], captured_at=captured_at)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "html_hash": self.html_hash,
            "text": self.text,
            "links": list(self.links),
            "title": self.title,
            "archive_url": self.archive_url,
            "captured_at": format_timestamp(self.captured_at),
        }


@dataclass
class TimestampProof:
    """Notarization result. Status may change after it is stored."""
    status: str  # pending | confirmed | failed
    proof: Optional[str]  # base64 OpenTimestamps receipt
    content_hash: str
    created_at: datetime
    verification_url: Optional[str] = None
    calendar_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status,
            "proof": self.proof,
            "hash": self.content_hash,
            "created_at": format_timestamp(self.created_at),
            "verification_url": self.verification_url,
            "calendar_url": self.calendar_url,
        }


# =============================================================================
# SNAPSHOT PARTS
# =============================================================================

@dataclass
class Attestation:
    statement: str
    attested_by: str
    attested_at: datetime
    signature: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "statement": self.statement,
            "attested_by": self.attested_by,
            "attested_at": format_timestamp(self.attested_at),
            "signature": self.signature,
        }


@dataclass
class CustodyEvent:
    """Single entry in the chain of custody."""
    action: CustodyAction
    performed_by: str
    performed_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "action": self.action.value,
            "performed_by": self.performed_by,
            "performed_at": format_timestamp(self.performed_at),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "details": self.details,
        }
