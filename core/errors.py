# ================================================================
# File     : errors.py
# Purpose  : Exception taxonomy and friendly messages for Graph errors
# Notes    : Per-role failures are collected, never raised past the
#            orchestrators; only total source loss is fatal
# ================================================================

from typing import Optional


class PimError(Exception):
    """Base class for every PimPoodle failure."""


class GraphApiError(PimError):
    """A Graph call returned a non-success status."""

    def __init__(self, status: int, code: str = "", message: str = "", url: str = ""):
        self.status = status
        self.code = code or ""
        self.message = message or ""
        self.url = url
        super().__init__(f"Graph API request failed with status {status}: {self.code or 'Unknown'} {self.message}".strip())

    @property
    def is_not_found_or_denied(self) -> bool:
        return self.status in (403, 404)


class GraphServerError(GraphApiError):
    """5xx from Graph; worth another attempt."""


class AuthenticationError(PimError):
    """Interactive or silent sign-in could not produce a token."""


class SourceUnavailableError(PimError):
    """One role source could not be read."""

    def __init__(self, source: str, cause: Exception):
        self.source = source
        self.cause = cause
        super().__init__(f"{source} unavailable: {cause}")


class RoleSourceError(PimError):
    """Every requested role source failed; nothing to show."""

    def __init__(self, failures):
        self.failures = list(failures)
        detail = "; ".join(str(f) for f in self.failures)
        super().__init__(f"All role sources failed: {detail}")


class PolicyResolutionError(PimError):
    pass


class AuthContextTokenError(PimError):
    """Token for an authentication context could not be acquired."""

    def __init__(self, context_id: str, reason: str = ""):
        self.context_id = context_id
        super().__init__(f"Could not acquire token for authentication context '{context_id}': {reason}".rstrip(": "))


class ActivationRejectedError(PimError):
    def __init__(self, code: str, message: str = ""):
        self.code = code
        self.message = message
        super().__init__(fncFriendlyError(code, message))


FRIENDLY_ERRORS = {
    "RoleAssignmentRequestAcrsValidationFailed":
        "This role requires a specific authentication context. The sign-in did not satisfy the required claim.",
    "RoleAssignmentExists":
        "This role is already active or a request is already pending.",
    "RoleEligibilityScheduleRequestNotFound":
        "You are not eligible for this role.",
    "RoleDefinitionDoesNotExist":
        "This role no longer exists. Refresh the role list and try again.",
    "AuthorizationFailed":
        "You do not have permission to perform this operation.",
    "InvalidAuthenticationToken":
        "Your session has expired. Sign in again.",
    "RequestConflict":
        "Another request for this role is in progress. Wait a moment and try again.",
}


# ================================================================
# Function: fncFriendlyError
# Purpose : Map a Graph error code to a user-facing message
# Notes   : Unknown codes pass their raw message straight through
# ================================================================
def fncFriendlyError(code: Optional[str], message: Optional[str] = None) -> str:
    if code and code in FRIENDLY_ERRORS:
        return FRIENDLY_ERRORS[code]
    if message:
        return message
    return code or "Unknown error"
