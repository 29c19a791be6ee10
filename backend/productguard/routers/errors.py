"""
Service error -> HTTP status mapping shared by the routers.
"""
from fastapi import HTTPException

from ..services.errors import (
    EnforcementCoreError,
    ValidationError,
    NotFoundError,
    AuthorizationError,
    PersistenceError,
    TransitionConflictError,
)


def to_http_exception(error: EnforcementCoreError) -> HTTPException:
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, AuthorizationError):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, TransitionConflictError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, PersistenceError):
        return HTTPException(status_code=500, detail="Failed to persist change")
    return HTTPException(status_code=500, detail=str(error))
