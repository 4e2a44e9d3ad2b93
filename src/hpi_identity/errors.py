"""Error taxonomy for the verification layer.

Every error carries a machine-readable ``kind``, the HTTP status the API
answers with, and only metadata that is safe to show the caller. None of
them ever holds a one-time code, a session token, a digest or a secret.
"""

from __future__ import annotations

from typing import Any


class IdentityError(Exception):
    """Base class for all verification-layer errors."""

    kind = "error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def metadata(self) -> dict[str, Any]:
        return {}


class ValidationError(IdentityError):
    """Malformed identity or code, or a wrong code."""

    kind = "validation_error"
    status_code = 400

    def __init__(self, message: str, attempts_remaining: int | None = None) -> None:
        super().__init__(message)
        self.attempts_remaining = attempts_remaining

    @property
    def metadata(self) -> dict[str, Any]:
        if self.attempts_remaining is None:
            return {}
        return {"attempts_remaining": self.attempts_remaining}


class NotFoundError(IdentityError):
    kind = "not_found"
    status_code = 404


class ExpiredError(IdentityError):
    kind = "expired"
    status_code = 410


class LockedError(IdentityError):
    kind = "locked"
    status_code = 423


class CooldownError(IdentityError):
    """Raised when a resend is requested before the cooldown has elapsed."""

    kind = "cooldown"
    status_code = 429

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    @property
    def metadata(self) -> dict[str, Any]:
        return {"retry_after": self.retry_after}


class AuthError(IdentityError):
    """Webhook signature invalid, or no secret configured where one is required."""

    kind = "unauthorized"
    status_code = 401


class SessionExpiredError(IdentityError):
    kind = "session_expired"
    status_code = 401

    @property
    def metadata(self) -> dict[str, Any]:
        return {"redirect": "/login"}


class RefreshError(IdentityError):
    """The identity provider could not refresh a session."""

    kind = "refresh_failed"
    status_code = 401


class ForbiddenError(IdentityError):
    """A valid session whose role does not allow the route."""

    kind = "forbidden"
    status_code = 403
