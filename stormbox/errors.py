"""Project-wide error types."""


class ProjectError(Exception):
    """Base for all Stormbox errors."""


class ValidationError(ProjectError):
    """Invalid input data."""


class NotConnectedError(ProjectError):
    """Operation attempted without an active mail session."""


class ExternalServiceError(ProjectError):
    """Third-party API or service failure."""


class TransportError(ExternalServiceError):
    """Network or connectivity failure talking to the mail server."""


class AuthError(ExternalServiceError):
    """Credentials or access token were rejected."""


class ProtocolMethodError(ExternalServiceError):
    """The server accepted the request but reported method or per-item failures."""

    def __init__(self, message, issues=None):
        super().__init__(message)
        self.issues = list(issues or [])


class RemoteMutationError(ProtocolMethodError):
    """A seen-flag, move or destroy call was not applied by the server."""


class StaleCursorError(ExternalServiceError):
    """A query state cursor is missing or was rejected by the server."""


__all__ = [
    "AuthError",
    "ExternalServiceError",
    "NotConnectedError",
    "ProjectError",
    "ProtocolMethodError",
    "RemoteMutationError",
    "StaleCursorError",
    "TransportError",
    "ValidationError",
]
