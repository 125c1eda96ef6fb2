"""
core/errors.py -- Error taxonomy for the authentication core.

Every error carries three things the API layer needs to render the standard
error envelope without inspecting the exception type:
  code        -- machine-readable string ("invalid_credentials")
  status_code -- HTTP-equivalent status
  message     -- user-visible text

User-visible messages are deliberately generic. InvalidCredentials never says
whether the email or the password was wrong. Only AccountLocked and the MFA
errors reveal more state, because they occur after identity is already
partially established.

Authentication-path errors are returned to the caller and never retried:
a silent retry of a wrong password would count against the lockout twice.

Layer rule: no imports from other project packages.
"""

from __future__ import annotations


class AuthGuardError(Exception):
    """Base class for every error the core raises on purpose."""

    code = "error"
    status_code = 400
    default_message = "Request failed."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class InvalidCredentials(AuthGuardError):
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid email or password."


class AccountLocked(AuthGuardError):
    code = "account_locked"
    status_code = 423

    def __init__(self, remaining_minutes: int) -> None:
        self.remaining_minutes = remaining_minutes
        super().__init__(f"Account is locked. Try again in {remaining_minutes} minute(s).")


class EmailUnverified(AuthGuardError):
    code = "email_unverified"
    status_code = 403
    default_message = "Please verify your email address before logging in."


class MfaExpired(AuthGuardError):
    code = "mfa_expired"
    status_code = 400
    default_message = "Verification code has expired. Please log in again."


class MfaMismatch(AuthGuardError):
    code = "mfa_mismatch"
    status_code = 400
    default_message = "Verification code is incorrect."


class InvalidRefreshToken(AuthGuardError):
    code = "invalid_refresh_token"
    status_code = 401
    default_message = "Invalid or expired refresh token."


class InvalidCode(AuthGuardError):
    code = "invalid_code"
    status_code = 400
    default_message = "Invalid or expired code."


class NotFound(AuthGuardError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found."


class Forbidden(AuthGuardError):
    code = "forbidden"
    status_code = 403
    default_message = "You are not allowed to perform this action."


class Conflict(AuthGuardError):
    code = "conflict"
    status_code = 409
    default_message = "Resource already exists."


class ValidationError(AuthGuardError):
    code = "validation_error"
    status_code = 422
    default_message = "Request validation failed."


class NothingToExport(AuthGuardError):
    code = "nothing_to_export"
    status_code = 404
    default_message = "No audit events match the given filters."


class NotificationFailed(AuthGuardError):
    code = "notification_failed"
    status_code = 502
    default_message = "Could not deliver the notification. Please try again later."


class StorageUnavailable(AuthGuardError):
    code = "storage_unavailable"
    status_code = 503
    default_message = "Storage is temporarily unavailable."
