"""
Enforcement Services

Enforcement action lifecycle, deadline tracking and the escalation chain:
- EnforcementActionService: draft -> sent -> acknowledged/removed/failed
- DeadlineEngine: overdue sweep, escalation proposals/drafts, review sweep
- EscalationChain: fixed, acyclic next-step mapping
"""

from .escalation import (
    EscalationChain,
    ResponseWindows,
    DEFAULT_ESCALATION_CHAIN,
    DEFAULT_RESPONSE_WINDOWS,
)
from .action_service import EnforcementActionService
from .deadline_engine import DeadlineEngine, EscalationProposal

__all__ = [
    'EscalationChain',
    'ResponseWindows',
    'DEFAULT_ESCALATION_CHAIN',
    'DEFAULT_RESPONSE_WINDOWS',
    'EnforcementActionService',
    'DeadlineEngine',
    'EscalationProposal',
]
