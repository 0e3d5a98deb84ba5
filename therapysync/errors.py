"""
Error taxonomy for session notes and calendar sync.

Every error is local to one session, note or credential and is raised to the
immediate caller. Only ConfigurationError is fatal, and only at startup.
"""

from typing import Optional


class TherapySyncError(Exception):
    """Base class for all therapysync errors"""

    pass


class ConfigurationError(TherapySyncError):
    """Raised at startup when a required secret is missing or invalid"""

    pass


class Forbidden(TherapySyncError):
    """Caller lacks the required relationship to the session"""

    pass


class NotFound(TherapySyncError):
    """Referenced session or credential does not exist"""

    pass


class InvalidRequest(TherapySyncError):
    """Request is well-formed but not acceptable (empty note, double cancel)"""

    pass


class DecryptionError(TherapySyncError):
    """A note envelope is malformed or was encrypted under another key"""

    pass


class CalendarUnavailable(TherapySyncError):
    """No usable calendar credential for the therapist"""

    pass


class AuthRequired(CalendarUnavailable):
    """Therapist has never authorized calendar access"""

    pass


class ReauthorizationRequired(CalendarUnavailable):
    """Provider rejected the stored refresh token"""

    pass


class RemoteSyncError(TherapySyncError):
    """Calendar provider call failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
