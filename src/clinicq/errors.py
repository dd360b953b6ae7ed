"""
Error taxonomy for the queue core.
"""

from __future__ import annotations

from typing import Optional


class QueueError(Exception):
    """Base class for all queue errors."""


class NotFoundError(QueueError):
    """Raised when an entry is missing or no eligible next patient exists."""

    def __init__(self, message: str, clinic_id: Optional[str] = None, entry_id: Optional[str] = None):
        self.clinic_id = clinic_id
        self.entry_id = entry_id
        super().__init__(message)


class ValidationError(QueueError):
    """Raised for malformed position, strategy or status requests."""

    def __init__(self, message: str, entry_id: Optional[str] = None):
        self.entry_id = entry_id
        super().__init__(message)


class ConflictError(QueueError):
    """Raised when a concurrent mutation or capacity conflict is detected."""

    def __init__(self, message: str, entry_id: Optional[str] = None):
        self.entry_id = entry_id
        super().__init__(message)


class ExternalServiceError(QueueError):
    """Raised when the remote predictor is unreachable, slow or returns garbage."""

    def __init__(self, service: str, message: Optional[str] = None):
        self.service = service
        super().__init__(message or f"{service} unavailable")


class EstimationUnavailable(QueueError):
    """Raised by an estimator that has no data to offer."""


class InvariantViolation(QueueError):
    """Raised when queue state breaks an invariant. Never caught to repair state."""

    def __init__(self, message: str, clinic_id: Optional[str] = None):
        self.clinic_id = clinic_id
        super().__init__(message)
