"""
STREET PATROL LOG - Error taxonomy.

Every error carries a user-facing message and the HTTP status the route
boundary answers with.
"""


class PatrolError(Exception):
    """Base class for all recoverable patrol errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"ok": False, "error": self.message, "error_type": type(self).__name__}


class ValidationError(PatrolError):
    """Missing or invalid required input. Never mutates state."""
    status_code = 400


class AuthError(PatrolError):
    """No authenticated user."""
    status_code = 401


class AuthorizationError(PatrolError):
    """Authenticated user does not own the patrol."""
    status_code = 403


class PatrolNotFoundError(PatrolError):
    status_code = 404


class StateError(PatrolError):
    """Operation not allowed in the patrol's current status."""
    status_code = 409


class StoreError(PatrolError):
    """Read or write against the record store failed."""
    status_code = 503
