"""
Priority Scorer

Calculates severity scores (0-100) and assigns priorities (P0/P1/P2) to
infringements from:
- Match confidence
- Audience size/reach
- Monetization (is the pirate making money?)
- Platform type
- Estimated revenue loss
- Country enforceability

Pure and deterministic. No database access, no shared mutable state.
"""
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from ...models.db_models import Priority


# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_PLATFORM_WEIGHTS = MappingProxyType({
    "telegram": 0.90,     # Large piracy networks
    "torrent": 0.85,      # Permanent distribution
    "cyberlocker": 0.80,  # Monetized file sharing
    "google": 0.75,       # Discoverability
    "discord": 0.70,      # Private communities
    "forum": 0.65,        # Niche distribution
    "social": 0.60,       # Viral potential
})


def _tier(points: int, *names: str) -> Dict[str, int]:
    return {name: points for name in names}


# Normalized (upper-case) country code or name -> enforceability bonus
DEFAULT_COUNTRY_TIERS = MappingProxyType({
    # Tier 1: strongest IP enforcement
    **_tier(10,
            "US", "USA", "UNITED STATES", "UNITED STATES OF AMERICA",
            "GB", "UK", "UNITED KINGDOM", "GREAT BRITAIN",
            "CA", "CANADA",
            "AU", "AUSTRALIA",
            "NZ", "NEW ZEALAND"),
    # Tier 2: major EU + NO, CH
    **_tier(5,
            "DE", "GERMANY",
            "FR", "FRANCE",
            "IT", "ITALY",
            "ES", "SPAIN",
            "NL", "NETHERLANDS",
            "SE", "SWEDEN",
            "NO", "NORWAY",
            "DK", "DENMARK",
            "FI", "FINLAND",
            "BE", "BELGIUM",
            "AT", "AUSTRIA",
            "CH", "SWITZERLAND",
            "IE", "IRELAND",
            "PL", "POLAND"),
    # Tier 3: other developed nations
    **_tier(2,
            "JP", "JAPAN",
            "KR", "SOUTH KOREA", "KOREA",
            "SG", "SINGAPORE",
            "IL", "ISRAEL",
            "BR", "BRAZIL",
            "MX", "MEXICO",
            "AR", "ARGENTINA"),
})

DEFAULT_CHECK_INTERVAL_DAYS = MappingProxyType({
    Priority.P0: 1,
    Priority.P1: 3,
    Priority.P2: 7,
})


@dataclass(frozen=True)
class ScoringConfig:
    """Immutable scoring tables. Inject an instance to override per tenant or in tests."""
    platform_weights: Mapping[str, float] = field(default_factory=lambda: DEFAULT_PLATFORM_WEIGHTS)
    default_platform_weight: float = 0.5
    country_tiers: Mapping[str, int] = field(default_factory=lambda: DEFAULT_COUNTRY_TIERS)
    check_interval_days: Mapping[Priority, int] = field(default_factory=lambda: DEFAULT_CHECK_INTERVAL_DAYS)
    max_score: int = 100


DEFAULT_SCORING_CONFIG = ScoringConfig()


# =============================================================================
# INPUTS / OUTPUTS
# =============================================================================

@dataclass(frozen=True)
class ScoringInputs:
    match_confidence: float
    platform: str
    audience_count: int = 0
    monetization_detected: bool = False
    estimated_revenue_loss: float = 0.0
    country: Optional[str] = None

    @classmethod
    def from_signal(cls, signal, audience_count: int) -> "ScoringInputs":
        """Build inputs from a validated DetectionSignal."""
        return cls(
            match_confidence=signal.match_confidence,
            platform=signal.platform,
            audience_count=audience_count,
            monetization_detected=signal.monetization_detected,
            estimated_revenue_loss=signal.estimated_revenue_loss,
            country=signal.infrastructure.country,
        )


@dataclass(frozen=True)
class ScoringResult:
    severity_score: int
    priority: Priority
    breakdown: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity_score": self.severity_score,
            "priority": self.priority.value,
            "breakdown": dict(self.breakdown),
        }


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (not banker's rounding)."""
    return int(math.floor(value + 0.5))


# =============================================================================
# SCORER
# =============================================================================

class PriorityScorer:
    """Severity/priority scorer over an injected ScoringConfig."""

    def __init__(self, config: ScoringConfig = DEFAULT_SCORING_CONFIG):
        self.config = config

    def score(self, inputs: ScoringInputs) -> ScoringResult:
        """Calculate severity score and assign priority."""
        confidence = min(max(inputs.match_confidence, 0.0), 1.0)
        breakdown = {
            "match_confidence_points": self.score_match_confidence(confidence),
            "audience_points": self.score_audience(inputs.audience_count),
            "monetization_points": self.score_monetization(inputs.monetization_detected),
            "platform_points": self.score_platform(inputs.platform),
            "revenue_impact_points": self.score_revenue_impact(inputs.estimated_revenue_loss),
            "country_bonus_points": self.score_country(inputs.country),
        }

        # Sub-score maxima sum to 110; anything above the ceiling is capped
        severity_score = min(sum(breakdown.values()), self.config.max_score)
        priority = self.assign_priority(severity_score, inputs, confidence)

        return ScoringResult(severity_score=severity_score, priority=priority, breakdown=breakdown)

    # -------------------------------------------------------------------------
    # Sub-scores
    # -------------------------------------------------------------------------

    def score_match_confidence(self, confidence: float) -> int:
        """0-20 points."""
        return round_half_up(confidence * 20)

    def score_audience(self, count: int) -> int:
        """0-25 points, stepped."""
        if count <= 0:
            return 0
        if count < 100:
            return 5
        if count < 500:
            return 10
        if count < 2000:
            return 15
        if count < 10000:
            return 20
        return 25

    def score_monetization(self, detected: bool) -> int:
        """0 or 30 points."""
        return 30 if detected else 0

    def score_platform(self, platform: Optional[str]) -> int:
        """0-15 points from the platform risk weight."""
        key = (platform or "").strip().lower()
        weight = self.config.platform_weights.get(key, self.config.default_platform_weight)
        return round_half_up(weight * 15)

    def score_revenue_impact(self, loss: float) -> int:
        """0-10 points, stepped."""
        if loss <= 0:
            return 0
        if loss < 100:
            return 2
        if loss < 500:
            return 4
        if loss < 1000:
            return 6
        if loss < 5000:
            return 8
        return 10

    def score_country(self, country: Optional[str]) -> int:
        """0-10 points. Exact match on normalized code or name."""
        if not country:
            return 0
        key = " ".join(country.upper().split())
        return self.config.country_tiers.get(key, 0)

    # -------------------------------------------------------------------------
    # Priority
    # -------------------------------------------------------------------------

    def assign_priority(self, score: int, inputs: ScoringInputs, confidence: float) -> Priority:
        """
        First matching rule wins.

        P0: score >= 75, or monetized with confidence >= 0.75,
            or audience >= 50K with confidence >= 0.60
        P1: score >= 50, or monetized, or audience >= 5K
        P2: everything else
        """
        if (
            score >= 75
            or (inputs.monetization_detected and confidence >= 0.75)
            or (inputs.audience_count >= 50000 and confidence >= 0.60)
        ):
            return Priority.P0

        if score >= 50 or inputs.monetization_detected or inputs.audience_count >= 5000:
            return Priority.P1

        return Priority.P2

    def next_check_interval(self, priority: Priority) -> timedelta:
        """P0 = 1 day, P1 = 3 days, P2 = 7 days."""
        days = self.config.check_interval_days.get(Priority(priority), 7)
        return timedelta(days=days)

    def calculate_next_check(self, priority: Priority, now: datetime) -> datetime:
        return now + self.next_check_interval(priority)


# =============================================================================
# AUDIENCE PARSING
# =============================================================================

_AUDIENCE_WORDS = re.compile(r"members|subscribers|followers|visits|views|users|/mo")
_SUFFIXED = re.compile(r"([0-9]+(?:\.[0-9]+)?)\s*([km])\b")
_PLAIN = re.compile(r"[0-9][0-9,]*")


def parse_audience_count(text: Optional[str]) -> int:
    """
    Normalize a free-text audience size to an integer.

    "12.4K followers" -> 12400
    "2,500 members"   -> 2500
    "2.1M views"      -> 2100000
    None / unparsable -> 0
    """
    if not text:
        return 0

    cleaned = _AUDIENCE_WORDS.sub("", text.lower()).strip()

    match = _SUFFIXED.search(cleaned)
    if match:
        multiplier = 1000 if match.group(2) == "k" else 1000000
        return round_half_up(float(match.group(1)) * multiplier)

    match = _PLAIN.search(cleaned)
    if match:
        return int(match.group(0).replace(",", ""))

    return 0
