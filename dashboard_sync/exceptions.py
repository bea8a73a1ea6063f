"""
Custom exceptions for dashboard sync.

Remote stores raise these so the sync layer can apply one propagation
policy regardless of which backend is wired in. Empty reads are not errors.
"""


class DashboardSyncError(Exception):
    """Base exception for all dashboard sync errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RemoteUnavailableError(DashboardSyncError):
    """Raised when the remote store cannot serve a read, write or delete."""

    def __init__(
        self,
        operation: str,
        table_id: str | None = None,
        cause: Exception | None = None,
    ):
        details = {"operation": operation}
        if table_id:
            details["table_id"] = table_id
        if cause:
            details["cause"] = str(cause)
        message = f"Remote store unavailable during {operation}"
        if table_id:
            message += f": {table_id}"
        super().__init__(message, details)
        self.operation = operation
        self.table_id = table_id
        self.cause = cause


class AuthenticationError(RemoteUnavailableError):
    """Raised when authentication to the remote store fails."""

    def __init__(self, endpoint: str, reason: str | None = None):
        details = {"operation": "authenticate", "endpoint": endpoint}
        if reason:
            details["reason"] = reason
        DashboardSyncError.__init__(self, f"Authentication failed for {endpoint}", details)
        self.operation = "authenticate"
        self.table_id = None
        self.cause = None
        self.endpoint = endpoint
        self.reason = reason


class ConfigurationError(DashboardSyncError):
    """Raised when adapter wiring is missing or configuration is invalid."""

    def __init__(self, message: str, field: str | None = None):
        details = {}
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.field = field


class SnapshotIOError(DashboardSyncError):
    """Raised when an explicit snapshot export or import fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Snapshot I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause
