"""
auth/errors.py -- Error taxonomy for the authentication core.

Every error carries a fixed public code and message. The message never varies
with the cause: "no such user" and "wrong password" both raise
InvalidCredentials with the same text, and a refresh token that never existed,
expired, or was already used raises the same InvalidOrExpiredToken. Diagnostic
detail goes to the log, not into the exception message.

The API layer maps AuthError subclasses to HTTP responses through a single
exception handler using status_code.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for failures surfaced to callers of the auth core."""

    code = "auth_error"
    message = "Authentication failed."
    status_code = 401

    def __init__(self) -> None:
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid username or password."


class InvalidAssertion(AuthError):
    code = "invalid_assertion"
    message = "Invalid identity token."


class InvalidOrExpiredToken(AuthError):
    code = "invalid_refresh_token"
    message = "Invalid or expired refresh token."


class ResolutionFailure(AuthError):
    """A storage step failed. The underlying exception is chained, not exposed."""

    code = "resolution_failure"
    message = "The request could not be completed. Try again later."
    status_code = 503
