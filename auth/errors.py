"""
auth/errors.py -- Error taxonomy for the authentication core.

Every failure that leaves auth/ is an AuthError subclass. Each carries a
stable machine-readable code, a caller-safe message and the HTTP status the
API layer should use. api/main.py owns the translation to responses; auth/
itself never imports FastAPI exceptions.

Messages are deliberately generic for authentication failures so a caller
cannot tell which factor (email, password, token) was wrong.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all errors surfaced by the auth core."""

    code = "auth_error"
    status_code = 400
    default_message = "Request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Validation (recoverable -- fix input and resubmit)
# ---------------------------------------------------------------------------


class ValidationError(AuthError):
    code = "validation_error"
    status_code = 400
    default_message = "Invalid input."


class WeakPassword(ValidationError):
    code = "weak_password"
    default_message = "Password does not meet strength requirements."

    def __init__(self, errors: list[str]) -> None:
        super().__init__()
        self.errors = list(errors)


class PasswordMismatch(ValidationError):
    code = "password_mismatch"
    default_message = "Passwords do not match."


class IncorrectCurrentPassword(ValidationError):
    code = "incorrect_current_password"
    default_message = "Current password is incorrect."


class InvalidResetToken(ValidationError):
    code = "invalid_reset_token"
    default_message = "Invalid or expired password reset token."


class InvalidInput(ValidationError):
    code = "invalid_input"


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------


class ConflictError(AuthError):
    code = "conflict"
    status_code = 409
    default_message = "Resource already exists."


class EmailInUse(ConflictError):
    code = "email_in_use"
    default_message = "User with this email already exists."


# ---------------------------------------------------------------------------
# Authentication (re-authenticate)
# ---------------------------------------------------------------------------


class AuthenticationError(AuthError):
    code = "unauthorized"
    status_code = 401
    default_message = "Authentication required."


class InvalidCredentials(AuthenticationError):
    code = "invalid_credentials"
    default_message = "Invalid credentials."


class AccountLocked(AuthenticationError):
    code = "account_locked"
    default_message = "Account is temporarily locked."


class InvalidRefreshToken(AuthenticationError):
    code = "invalid_refresh_token"
    default_message = "Invalid refresh token."


class AuthenticationRequired(AuthenticationError):
    code = "authentication_required"


class InvalidToken(AuthenticationError):
    code = "invalid_token"
    default_message = "Invalid token."


class TokenError(AuthenticationError):
    """Raised by TokenIssuer.verify(). The orchestrator and guard translate it."""

    code = "token_error"
    default_message = "Invalid token."


class TokenInvalid(TokenError):
    code = "token_invalid"


class TokenExpired(TokenError):
    code = "token_expired"
    default_message = "Token has expired."


class TokenMalformed(TokenError):
    code = "token_malformed"
    default_message = "Token is malformed."


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class AuthorizationError(AuthError):
    code = "forbidden"
    status_code = 403
    default_message = "Insufficient permissions."


class InsufficientPermissions(AuthorizationError):
    code = "insufficient_permissions"


class ForbiddenAction(AuthorizationError):
    code = "forbidden_action"
    default_message = "This action is not allowed."


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(AuthError):
    code = "not_found"
    status_code = 404
    default_message = "Not found."


class UserNotFound(NotFoundError):
    code = "user_not_found"
    default_message = "User not found."


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class TransientError(AuthError):
    """Store failure or timeout. Safe to retry idempotent reads after backoff."""

    code = "service_unavailable"
    status_code = 503
    default_message = "Service temporarily unavailable. Please retry."


class HashingError(AuthError):
    code = "internal_error"
    status_code = 500
    default_message = "An unexpected error occurred."
