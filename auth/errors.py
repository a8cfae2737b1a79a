"""
auth/errors.py -- Exception taxonomy for the identity core.

Every failure the core can report is an AuthError subclass carrying an HTTP
status_code and a stable, coarse error code. The API layer renders them with
one exception handler; it only ever returns `code` and the class-level
`public_message`. The optional `reason` is for logs and tests -- it says which
factor failed (e.g. "password_mismatch" vs "not_found") and must never reach a
response body.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for identity-core failures mapped to HTTP responses."""

    status_code: int = 400
    code: str = "bad_request"
    public_message: str = "Request could not be completed."

    def __init__(self, message: str | None = None, *, reason: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.reason = reason


# ---------------------------------------------------------------------------
# NotFound
# ---------------------------------------------------------------------------


class NotFoundError(AuthError):
    status_code = 404
    code = "not_found"
    public_message = "Resource not found."


class SessionNotFoundError(NotFoundError):
    public_message = "Session not found."


class InvitationNotFoundError(NotFoundError):
    public_message = "Invalid invitation token."


class RoleNotFoundError(NotFoundError):
    public_message = "Role not found."


# ---------------------------------------------------------------------------
# Credentials and account state
# ---------------------------------------------------------------------------


class InvalidCredentialError(AuthError):
    """Email/password rejected. The public message never says which one."""

    status_code = 401
    code = "invalid_credentials"
    public_message = "Invalid email or password."


class IdentityNotFoundError(InvalidCredentialError):
    """No identity owns the email. Rendered exactly like a bad password."""


class PasswordMismatchError(InvalidCredentialError):
    pass


class AccountLockedError(AuthError):
    """Temporary lockout after repeated failures, or an explicitly LOCKED account."""

    status_code = 403
    code = "account_locked"
    public_message = "Account is temporarily locked."


class AccountInactiveError(AuthError):
    """Status other than ACTIVE. Persists until an administrator acts."""

    status_code = 403
    code = "account_inactive"
    public_message = "Account is not active."


class CurrentPasswordMismatchError(AuthError):
    status_code = 400
    code = "invalid_current_password"
    public_message = "Current password is incorrect."


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenInvalidError(AuthError):
    status_code = 401
    code = "invalid_token"
    public_message = "Invalid or expired token."


class TokenMalformedError(TokenInvalidError):
    pass


class TokenSignatureError(TokenInvalidError):
    pass


class TokenExpiredError(TokenInvalidError):
    pass


class TokenRevokedError(TokenInvalidError):
    pass


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class ForbiddenError(AuthError):
    status_code = 403
    code = "forbidden"
    public_message = "Missing required permission."


# ---------------------------------------------------------------------------
# Conflicts and lifecycle
# ---------------------------------------------------------------------------


class ConflictError(AuthError):
    status_code = 409
    code = "conflict"
    public_message = "Resource already exists."


class ExpiredError(AuthError):
    status_code = 400
    code = "expired"
    public_message = "Resource has expired."


class SessionExpiredError(ExpiredError):
    public_message = "Session has expired."


class InvitationExpiredError(ExpiredError):
    public_message = "Invitation has expired."


class InvitationAlreadyAcceptedError(AuthError):
    status_code = 400
    code = "invitation_accepted"
    public_message = "Invitation has already been accepted."


class InvitationCancelledError(AuthError):
    status_code = 400
    code = "invitation_cancelled"
    public_message = "Invitation has been cancelled."


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


class KeyConfigurationError(RuntimeError):
    """Signing keys missing or unusable. Fatal at startup, never per request."""
