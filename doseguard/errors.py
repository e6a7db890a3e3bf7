"""
Error taxonomy for dose tracking.

Command-layer errors surface to the caller with a structured ``kind`` and enough
``context`` to drive a fallback (for example switching from undo to correction).
Calculation-layer problems never escape: they are logged and replaced by
system defaults.
"""

from datetime import datetime
from typing import Any


class DoseTrackingError(Exception):
    """Base class for all domain errors."""

    kind: str = "dose_tracking_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context

    def to_dict(self) -> dict[str, Any]:
        context = {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in self.context.items()
        }
        return {"kind": self.kind, "message": self.message, **context}


class ValidationError(DoseTrackingError, ValueError):
    """Caller supplied malformed input (time strings, slot config, snooze minutes)."""

    kind = "validation_error"


class InvalidTimeFormat(ValidationError):
    kind = "invalid_time_format"


class ConflictError(DoseTrackingError):
    """Request conflicts with current state."""

    kind = "conflict"


class DuplicateSubmissionError(ConflictError):
    kind = "duplicate_submission"


class InvalidTransitionError(ConflictError):
    kind = "invalid_transition"


class UndoWindowExpired(ConflictError):
    """Undo attempted after the window closed. Use correction instead."""

    kind = "undo_window_expired"

    def __init__(self, message: str, *, expired_at: datetime, **context: Any) -> None:
        super().__init__(message, expired_at=expired_at, requires_correction=True, **context)
        self.expired_at = expired_at
        self.requires_correction = True


class NotFoundError(DoseTrackingError):
    kind = "not_found"


class ConfigurationError(DoseTrackingError):
    """Patient configuration could not be loaded. Recovered locally with defaults."""

    kind = "configuration_error"


class TransientStorageError(DoseTrackingError):
    """A write failed in a way that may succeed on retry."""

    kind = "transient_storage_error"
