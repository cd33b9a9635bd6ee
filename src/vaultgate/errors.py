"""
Error taxonomy for vaultgate.

Every rejected operation raises one of these with a specific reason code, so
callers can tell "target offline" from "insufficient role" from "kill switch
active". The HTTP layer maps them to status codes and the real-time router
maps them to failed command acknowledgements.
"""

from typing import Optional


class VaultGateError(Exception):
    """
    Base class for all vaultgate errors.

    Attributes:
        code: Machine-readable reason (e.g. "Expired", "TargetNotFound")
        message: Human-readable description
        status: HTTP status equivalent
    """

    status = 500
    default_code = "InternalError"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None):
        self.code = code or self.default_code
        self.message = message or self.code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class AuthFailure(VaultGateError):
    """Bad credentials or an expired, unknown or revoked token."""

    status = 401
    default_code = "Unauthorized"


class Forbidden(VaultGateError):
    """Authenticated, but the role or account state does not allow the action."""

    status = 403
    default_code = "Forbidden"


class NotFound(VaultGateError):
    """Target principal or content is absent."""

    status = 404
    default_code = "NotFound"


class Conflict(VaultGateError):
    """Duplicate user, or content already mid-replace."""

    status = 409
    default_code = "Conflict"


class InvalidInput(VaultGateError):
    """Malformed request data."""

    status = 400
    default_code = "InvalidInput"


class ConfigurationError(Exception):
    """Raised at startup when required configuration is missing or invalid."""
