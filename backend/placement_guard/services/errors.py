"""
Monitoring Errors

One exception per failure class. Routers translate these into HTTP
responses; the scheduler records them per item and keeps going.
"""
from typing import Optional


class MonitoringError(Exception):
    """Base class for check-in and circumvention engine failures."""
    pass


class ValidationError(MonitoringError):
    """Malformed input. Rejected immediately, never retried automatically."""
    pass


class NotFoundError(MonitoringError):
    """Referenced introduction, check-in or flag does not exist."""
    pass


class TransientCollaboratorError(MonitoringError):
    """
    Mail, classifier or billing was unreachable, timed out or returned garbage.
    State is left as it was before the call; safe to retry.
    """

    def __init__(self, collaborator: str, message: str):
        self.collaborator = collaborator
        super().__init__(f"{collaborator} unavailable: {message}")


class ConflictError(MonitoringError):
    """State changed concurrently under a compare-and-set. Re-fetch before retrying."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)


class InvalidTransitionError(MonitoringError):
    """An edge that is not in the flag transition table was requested."""

    def __init__(self, from_status: str, event: str, reason: Optional[str] = None):
        self.from_status = from_status
        self.event = event
        message = f"Cannot apply '{event}' to a flag in {from_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
