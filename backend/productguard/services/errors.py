"""
Enforcement Core Errors

Only validation, authorization, not-found and persistence failures reach the
caller. BestEffortError is raised inside downstream stages and is always
caught and logged at the stage boundary.
"""


class EnforcementCoreError(Exception):
    """Base class for all enforcement core errors."""
    pass


class ValidationError(EnforcementCoreError):
    """Malformed action or missing required field. Raised before any write."""
    pass


class InvalidTransitionError(ValidationError):
    """The requested action is not allowed from the record's current status."""

    def __init__(self, from_status: str, action: str):
        self.from_status = from_status
        self.action = action
        super().__init__(f"Invalid transition: {from_status} + {action}")


class WhitelistedUrlError(ValidationError):
    """Candidate URL is on the product's whitelist."""
    pass


class DuplicateActionError(ValidationError):
    """An active enforcement action of this type already exists."""

    def __init__(self, infringement_id: str, action_type: str, existing_id: str):
        self.infringement_id = infringement_id
        self.action_type = action_type
        self.existing_id = existing_id
        super().__init__(
            f"Active {action_type} action {existing_id} already exists for infringement {infringement_id}"
        )


class NotFoundError(EnforcementCoreError):
    """Referenced record does not exist."""
    pass


class AuthorizationError(EnforcementCoreError):
    """Actor does not own the product linked to the record."""
    pass


class PersistenceError(EnforcementCoreError):
    """Transactional write failed. No partial state was committed."""
    pass


class TransitionConflictError(PersistenceError):
    """Record status changed between read and conditional update."""
    pass


class BestEffortError(EnforcementCoreError):
    """A downstream collaborator (capture, notarization, AI, CRM) failed."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"{stage}: {message}")
