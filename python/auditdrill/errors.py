"""Exception hierarchy for auditdrill.

Configuration drift and malformed remote data are logged and absorbed where
they are detected; only persistence failures travel back to callers, and
they do so as recoverable errors.
"""

from __future__ import annotations


class AuditDrillError(Exception):
    """Base class for all auditdrill errors."""


class ConfigurationError(AuditDrillError):
    """Raised when an exercise or grading configuration cannot be used."""


class PersistenceError(AuditDrillError):
    """A remote write or read was rejected.

    Attributes:
        session_id: The session document the operation targeted.
    """

    def __init__(self, message: str, session_id: str = "") -> None:
        super().__init__(message)
        self.session_id = session_id


class PersistenceTimeout(PersistenceError):
    """A remote write exceeded its timeout. Treated like any other failure."""
