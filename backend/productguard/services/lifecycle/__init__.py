"""
Lifecycle Services

Infringement ingestion, review transitions and the audit trail.
"""

from .authorization import Authorizer, ProductOwnershipAuthorizer
from .state_machine import (
    InfringementStateMachine,
    TransitionContext,
    TransitionResult,
    TRANSITIONS,
    can_transition,
)
from .infringement_service import InfringementService

__all__ = [
    'Authorizer',
    'ProductOwnershipAuthorizer',
    'InfringementStateMachine',
    'TransitionContext',
    'TransitionResult',
    'TRANSITIONS',
    'can_transition',
    'InfringementService',
]
