"""
Detection Signal Contracts

Typed candidate signals accepted at the ingestion boundary.
Evidence is a discriminated union keyed on match_type so downstream
code (scorer, evidence pipeline, feedback) reads typed fields only.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..services.errors import ValidationError


# =============================================================================
# INFRASTRUCTURE
# =============================================================================

class InfrastructureProfile(BaseModel):
    """Hosting/registrar/CDN profile. Opaque to the core beyond these fields."""
    hosting_provider: Optional[str] = None
    registrar: Optional[str] = None
    cdn: Optional[str] = None
    country: Optional[str] = None
    ip_addresses: List[str] = Field(default_factory=list)
    asn: Optional[str] = None
    abuse_email: Optional[str] = None


# =============================================================================
# EVIDENCE (discriminated on match_type)
# =============================================================================

class _EvidenceBase(BaseModel):
    page_title: Optional[str] = None
    screenshots: List[str] = Field(default_factory=list)
    url_chain: List[str] = Field(default_factory=list)
    detection_metadata: Dict[str, Any] = Field(default_factory=dict)


class HashMatchEvidence(_EvidenceBase):
    """File or media hash matched a protected asset."""
    match_type: Literal["exact_hash", "near_hash"]
    hash_matches: List[str] = Field(..., min_length=1)


class TextMatchEvidence(_EvidenceBase):
    """Keyword, phrase or partial text match."""
    match_type: Literal["keyword", "phrase", "partial"]
    matched_excerpts: List[str] = Field(..., min_length=1)
    keywords: List[str] = Field(default_factory=list)


class ManualEvidence(_EvidenceBase):
    """Reported by a person rather than a detector."""
    match_type: Literal["manual"]
    notes: Optional[str] = None


EvidencePacket = Annotated[
    Union[HashMatchEvidence, TextMatchEvidence, ManualEvidence],
    Field(discriminator="match_type"),
]

_evidence_adapter = TypeAdapter(EvidencePacket)


def parse_evidence(data: Dict[str, Any]):
    """Validate a stored evidence dict back into its typed variant."""
    try:
        return _evidence_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid evidence payload: {e}") from e


# =============================================================================
# DETECTION SIGNAL
# =============================================================================

class DetectionSignal(BaseModel):
    """A raw candidate emitted by the detection collaborator."""
    source_url: str = Field(..., min_length=1, max_length=2048)
    platform: str = Field(..., min_length=1, max_length=50)
    match_confidence: float = Field(..., ge=0.0, le=1.0)
    audience_size: Optional[str] = None  # "12.4K followers"
    audience_count: Optional[int] = Field(None, ge=0)
    monetization_detected: bool = False
    estimated_revenue_loss: float = Field(0.0, ge=0.0)
    infrastructure: InfrastructureProfile = Field(default_factory=InfrastructureProfile)
    evidence: EvidencePacket

    @field_validator("source_url")
    @classmethod
    def _strip_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("source_url must be an http(s) URL")
        return v

    @field_validator("platform")
    @classmethod
    def _normalize_platform(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def match_type(self) -> str:
        return self.evidence.match_type

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> "DetectionSignal":
        """Validate raw input, raising the core ValidationError on failure."""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid detection signal: {e}") from e
