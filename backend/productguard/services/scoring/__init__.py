"""
Scoring Services

Severity/priority scoring for detected infringements.
"""

from .priority_scorer import (
    PriorityScorer,
    ScoringConfig,
    ScoringInputs,
    ScoringResult,
    DEFAULT_SCORING_CONFIG,
    parse_audience_count,
)

__all__ = [
    'PriorityScorer',
    'ScoringConfig',
    'ScoringInputs',
    'ScoringResult',
    'DEFAULT_SCORING_CONFIG',
    'parse_audience_count',
]
