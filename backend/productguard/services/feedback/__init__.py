"""
Feedback Services

Learning patterns accumulated from review outcomes.
"""

from .feedback_recorder import FeedbackRecorder, WhitelistSignal, extract_patterns

__all__ = [
    'FeedbackRecorder',
    'WhitelistSignal',
    'extract_patterns',
]
