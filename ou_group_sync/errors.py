"""
Exception hierarchy for OU Group Sync.

Fatal errors (SetupError and its subclasses, SourceUnavailable) abort the run.
Per-unit errors (QueryFailed, CreationFailed) are logged and the run continues.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class SetupError(SyncError):
    """Raised when a required service cannot be reached or authenticated to."""
    pass


class ConfigurationError(SetupError):
    """Raised when configuration is invalid or missing required fields."""
    pass


class SourceUnavailable(SyncError):
    """Raised when organizational units cannot be enumerated."""
    pass


class QueryFailed(SyncError):
    """Raised when the existence check for a group fails."""

    def __init__(self, display_name: str, cause: Optional[Exception] = None):
        self.display_name = display_name
        self.cause = cause
        message = f"Lookup failed for group '{display_name}'"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class CreationFailed(SyncError):
    """Raised when group creation fails. Carries the provider error as ``cause``."""

    def __init__(self, display_name: str, cause: Optional[Exception] = None):
        self.display_name = display_name
        self.cause = cause
        message = f"Failed to create group '{display_name}'"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class GraphAPIError(SyncError):
    """Raised when a Microsoft Graph request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class GraphAuthenticationError(GraphAPIError):
    """Raised when a Graph token cannot be obtained or is rejected."""
    pass
