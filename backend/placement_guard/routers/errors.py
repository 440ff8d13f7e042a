"""
Service error -> HTTP response mapping shared by the routers.
"""
from fastapi import HTTPException

from ..services.errors import (
    ConflictError,
    InvalidTransitionError,
    MonitoringError,
    NotFoundError,
    TransientCollaboratorError,
    ValidationError,
)


def http_error(error: MonitoringError) -> HTTPException:
    """Translate a service exception into the HTTPException to raise."""
    if isinstance(error, ValidationError):
        return HTTPException(status_code=422, detail=str(error))

    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))

    if isinstance(error, InvalidTransitionError):
        return HTTPException(status_code=409, detail={
            "error": str(error),
            "from_status": error.from_status,
            "event": error.event,
        })

    if isinstance(error, ConflictError):
        return HTTPException(status_code=409, detail={
            "error": str(error),
            "current_status": error.current_status,
        })

    if isinstance(error, TransientCollaboratorError):
        return HTTPException(status_code=503, detail={
            "error": str(error),
            "collaborator": error.collaborator,
            "retryable": True,
        })

    return HTTPException(status_code=500, detail=str(error))
