"""
Token Allowance Errors

Every error carries the HTTP status and a stable error code so the API
layer can render a structured failure without inspecting the type.
"""

from typing import Optional

from .config import ERROR_CODES


class AllowanceError(Exception):
    """Base class for all allowance engine failures."""
    status_code = 500
    code = "ALLOWANCE_ERROR"

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        self.message = message or ERROR_CODES.get(self.code, "Token allowance error")
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        """Convert to API response format."""
        body = {
            "success": False,
            "error": self.message,
            "code": self.code
        }
        if self.details:
            body["details"] = self.details
        return body


class AuthenticationError(AllowanceError):
    """Missing, malformed or expired bearer credential."""
    status_code = 401
    code = "AUTHENTICATION_FAILED"


class AuthorizationError(AllowanceError):
    """Caller is authenticated but lacks the capability for the action."""
    status_code = 403
    code = "FORBIDDEN"


class UnknownUserError(AllowanceError):
    status_code = 404
    code = "USER_NOT_FOUND"


class AllowanceNotFoundError(AllowanceError):
    status_code = 404
    code = "ALLOWANCE_NOT_FOUND"


class InvalidPeriodError(AllowanceError):
    status_code = 400
    code = "INVALID_PERIOD"


class SettingValidationError(AllowanceError):
    status_code = 400
    code = "INVALID_SETTING"


class LedgerError(AllowanceError):
    """Storage failure while reading the period ledger."""
    status_code = 500
    code = "LEDGER_ERROR"


class LedgerWriteError(LedgerError):
    """Storage failure while inserting or updating a ledger row."""
    code = "LEDGER_WRITE_FAILED"


class PlanRegistryError(AllowanceError):
    """Profiles could not be read (identity lookup or batch enumeration)."""
    status_code = 500
    code = "PLAN_REGISTRY_UNAVAILABLE"


class SettingsStoreError(AllowanceError):
    """Settings could not be read for the admin listing (grants fail open instead)."""
    status_code = 500
    code = "SETTINGS_UNAVAILABLE"


class RequestValidationFailed(AllowanceError):
    status_code = 422
    code = "VALIDATION_ERROR"
