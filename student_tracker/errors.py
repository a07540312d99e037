"""Exception taxonomy shared by the controller components."""

from typing import Optional


class TrackerError(Exception):
    """Base class for all controller errors."""


class AuthorizationFailure(TrackerError):
    """Missing, expired or rejected credentials (401/403)."""

    def __init__(self, message: str = "Not authorized", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ValidationFailure(TrackerError):
    """Input rejected locally before it reaches the network."""


class TransientNetworkFailure(TrackerError):
    """Transport error or non-auth error response. Never retried automatically."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConfirmationMismatch(TrackerError):
    """Typed confirmation phrase did not match exactly."""


class InvalidTransition(TrackerError):
    """Operation not allowed in the guard's current state."""
