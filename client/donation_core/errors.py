"""
Failure taxonomy for the session and reconciliation core.

Every error carries a human-readable ``message`` and a machine-readable
``code`` so views can report it without string matching.
"""

from typing import Any, Optional


class PortalError(Exception):
    """Base class for every error this package raises on purpose."""

    code = "PORTAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class InvalidCredentials(PortalError):
    """Login rejected by the auth service. Recoverable by retrying."""

    code = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "Invalid email or password"):
        super().__init__(message)


class SessionExpired(PortalError):
    """Refresh failed. The session has already been cleared."""

    code = "SESSION_EXPIRED"

    def __init__(self, message: str = "Session expired, please sign in again"):
        super().__init__(message)


class NoRefreshToken(PortalError):
    """Refresh requested with no refresh token on record."""

    code = "NO_REFRESH_TOKEN"

    def __init__(self, message: str = "No refresh token available"):
        super().__init__(message)


class NetworkUnavailable(PortalError):
    """The remote service could not be reached (no HTTP response at all)."""

    code = "NETWORK_UNAVAILABLE"

    def __init__(self, message: str = "Network error. Please check your connection."):
        super().__init__(message)


class RemoteRejection(PortalError):
    """The remote service answered with an HTTP error status."""

    code = "REMOTE_REJECTION"

    def __init__(self, status: int, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.status = status
        self.detail = detail

    def __repr__(self):
        return f"RemoteRejection(status={self.status}, message={self.message!r})"


class UsageError(PortalError):
    """The caller violated a precondition. Raised before any I/O."""

    code = "USAGE_ERROR"


class NotAuthenticated(PortalError):
    """Operation needs a session and there is none."""

    code = "NOT_AUTHENTICATED"

    def __init__(self, message: str = "User is not authenticated"):
        super().__init__(message)
