"""
auth/errors.py -- Error taxonomy for authentication, authorization and sessions.

Every class carries a stable machine code and an HTTP status so the API layer
can render any of them into the common error envelope without a lookup table.
No error here is fatal to the process; all are per-request failures.

Authentication failures form one subtree (AuthenticationFailed). The service
raises the specific subclass so logs and tests can tell them apart; the HTTP
boundary collapses the whole subtree into one generic message.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every failure raised by auth/ and sessions/."""

    code: str = "auth_error"
    status_code: int = 400
    message: str = "Request failed."

    def __init__(self, message: str | None = None, *, field: str | None = None) -> None:
        self.message = message or self.message
        self.field = field
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Input and registration conflicts
# ---------------------------------------------------------------------------


class ValidationError(AuthError):
    """Malformed input. errors maps field name -> human readable problem."""

    code = "validation_error"
    status_code = 400
    message = "Request validation failed."

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = dict(errors)
        first = next(iter(self.errors), None)
        super().__init__(field=first)


class DuplicateUsername(AuthError):
    code = "duplicate_username"
    status_code = 409
    message = "That username is already taken."

    def __init__(self) -> None:
        super().__init__(field="username")


class DuplicateEmail(AuthError):
    code = "duplicate_email"
    status_code = 409
    message = "That email address is already registered."

    def __init__(self) -> None:
        super().__init__(field="email")


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthenticationFailed(AuthError):
    code = "bad_credentials"
    status_code = 401
    message = "Invalid username or password."


class InvalidCredentials(AuthenticationFailed):
    """Unknown user OR wrong password. Deliberately undifferentiated."""


class AccountDisabled(AuthenticationFailed):
    code = "account_disabled"
    message = "Account is disabled."


class AccountLocked(AuthenticationFailed):
    code = "account_locked"
    message = "Account is locked."


class AccountExpired(AuthenticationFailed):
    code = "account_expired"
    message = "Account has expired."


class CredentialsExpired(AuthenticationFailed):
    code = "credentials_expired"
    message = "Credentials have expired."


# ---------------------------------------------------------------------------
# Sessions, lookups, infrastructure
# ---------------------------------------------------------------------------


class SessionNotFound(AuthError):
    """Token did not resolve. Rendered exactly like 'not authenticated'."""

    code = "unauthorized"
    status_code = 401
    message = "Authentication required."


class IdentityNotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "User not found."


class StoreUnavailable(AuthError):
    """A backing store timed out or could not be reached. Safe to retry."""

    code = "store_unavailable"
    status_code = 503
    message = "Service temporarily unavailable. Please retry."
    retryable = True
