"""Typed failures raised by the forget request lifecycle.

Every error carries a stable ``code`` (the message key shown to users and
returned by the HTTP layer), so callers can branch without string matching.
"""

from __future__ import annotations


class ForgetError(Exception):
    """Base class for all request lifecycle failures."""

    code = "rtbf-error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)


# ------------------------------------------------------------------ #
# Precondition errors (returned to the caller, no further side effects)
# ------------------------------------------------------------------ #


class AlreadyPendingError(ForgetError):
    """The user already has an active (non-terminal) request."""

    code = "rtbf-already-pending"


class InvalidTokenError(ForgetError):
    """No PENDING request matches the confirmation token."""

    code = "rtbf-invalid-token"


class ExpiredTokenError(ForgetError):
    """The confirmation token is past its expiry."""

    code = "rtbf-expired-token"


class IdentityMismatchError(ForgetError):
    """The confirming user does not own the request."""

    code = "rtbf-user-mismatch"


class UserNotFoundError(ForgetError):
    code = "rtbf-user-not-found"


class RequestNotFoundError(ForgetError):
    code = "rtbf-request-not-found"


# ------------------------------------------------------------------ #
# Infrastructure errors
# ------------------------------------------------------------------ #


class NotificationError(ForgetError):
    """Confirmation delivery failed; the PENDING request stays persisted."""

    code = "rtbf-email-error"


class StoreError(ForgetError):
    code = "rtbf-db-error"


class RenameFailedError(ForgetError):
    """The atomic identity rename failed; no fan-out happened."""

    code = "rtbf-rename-fail"
