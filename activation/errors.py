"""Exception hierarchy for the activation core.

Every message is safe to show to an end user; internal detail goes to the logs.
"""
from typing import Any, Optional
from uuid import UUID


class ActivationError(Exception):
    """Base class for all activation failures surfaced to callers."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ActivationError):
    """Bad input shape or values, rejected before any write."""


class NotFoundError(ActivationError):
    pass


class ConflictError(ActivationError):
    """Scheduling overlap or duplicate claim."""

    def __init__(self, message: str, blocking_meeting_id: Optional[UUID] = None):
        super().__init__(message)
        self.blocking_meeting_id = blocking_meeting_id


class TransitionError(ActivationError):
    pass


class InvalidTransition(TransitionError):
    def __init__(self, current: str, requested: str, message: Optional[str] = None):
        super().__init__(message or f"Cannot move a pipeline from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class AlreadyTerminal(TransitionError):
    def __init__(self, current: str):
        super().__init__(f"Pipeline is already {current}")
        self.current = current


class UpstreamError(ActivationError):
    """External product API failure; details carry the provider's error verbatim."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details
