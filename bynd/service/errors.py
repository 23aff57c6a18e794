from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """A failure the API layer turns into an error envelope.

    Subclasses pin ``status_code`` and the envelope ``error_code``; either can
    be overridden per instance.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request rejected"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"
    default_message = "invalid token"


class InvalidCredentials(AuthenticationError):
    """Login rejected. Never says whether the email or the password was wrong."""

    default_message = "invalid credentials"


class InvalidToken(AuthenticationError):
    """Malformed access token or bad signature."""


class TokenExpired(InvalidToken):
    default_message = "token expired"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class EmailConflict(ConflictError):
    default_message = "email already registered"


class StorageUnavailable(ServiceError):
    """Credential or token storage could not answer in time.

    Kept out of the 401 family so an outage never reads as a bad token.
    """

    status_code = 503
    error_code = "service_unavailable"
    default_message = "service unavailable"


# revocation reasons stored on refresh records
TOKEN_REUSE_DETECTED = "TOKEN_REUSE_DETECTED"
LOGOUT = "LOGOUT"
ROTATION_ABORTED = "ROTATION_ABORTED"
