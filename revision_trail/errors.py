"""Exception hierarchy for revision-trail.

Every error raised by the audit log engine derives from RevisionTrailError so
callers can catch the whole family at an integration boundary.
"""

from enum import Enum


class RevisionTrailError(Exception):
    """Base class for all revision-trail errors."""
    pass


class ValidationError(RevisionTrailError):
    """Raised when an audit record is malformed at append time."""
    pass


class CodecError(RevisionTrailError):
    """Raised when a change payload cannot be encoded or decoded."""
    pass


class AuditStoreError(RevisionTrailError):
    """Raised when the audit store fails to persist or read records."""
    pass


class SettingsLoadError(RevisionTrailError):
    """Raised when the settings file cannot be loaded or validated."""
    pass


class UndoFailure(str, Enum):
    """Reasons an undo can be refused."""

    TARGET_MISSING = "target missing"
    DUPLICATE = "duplicate"
    INVALID_ACTION = "invalid action"
    UNKNOWN_TARGET = "unknown target type"


class UndoError(RevisionTrailError):
    """Raised when the inverse of an audit record cannot be applied.

    Attributes:
        reason: Why the undo was refused.
        detail: Optional human-readable context (target, action, ...).
    """

    def __init__(self, reason: UndoFailure, detail: str | None = None) -> None:
        self.reason = reason
        self.detail = detail
        message = reason.value if detail is None else f"{reason.value}: {detail}"
        super().__init__(message)


__all__ = [
    "AuditStoreError",
    "CodecError",
    "RevisionTrailError",
    "SettingsLoadError",
    "UndoError",
    "UndoFailure",
    "ValidationError",
]
