from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds raised by the service layer.

    The API layer matches on these exhaustively; adding a kind requires a
    matching entry in ``bookhub.api.error_handling``.
    """

    VALIDATION = "validation_error"
    INVALID_CREDENTIALS = "invalid_credentials"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    PROVIDER_EXCHANGE_FAILED = "provider_exchange_failed"
    PROVIDER_PROFILE_FETCH_FAILED = "provider_profile_fetch_failed"
    INTERNAL = "internal_error"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an :class:`ErrorKind` and an HTTP status code. ``detail``
    carries structured context; for 5xx kinds it is logged but never returned
    to the client.
    """

    kind: ErrorKind = ErrorKind.VALIDATION
    status_code: int = 400

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}

    @property
    def error_code(self) -> str:
        return self.kind.value


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    kind = ErrorKind.VALIDATION
    status_code = 400


class BadRequestError(ValidationError):
    """A request named no usable selector, e.g. a login with neither email nor phone."""


class InvalidCredentialsError(ServiceError):
    """Identifier/password pair did not match a stored identity (401)."""
    kind = ErrorKind.INVALID_CREDENTIALS
    status_code = 401


class UnauthenticatedError(ServiceError):
    """Authentication failed or missing (401)."""
    kind = ErrorKind.UNAUTHENTICATED
    status_code = 401
    reason = "unauthenticated"


class InvalidSignatureError(UnauthenticatedError):
    """Token is malformed, signed with another key, or uses another algorithm."""
    reason = "invalid_signature"


class TokenExpiredError(UnauthenticatedError):
    """Token signature is valid but its ``exp`` claim is in the past."""
    reason = "token_expired"


class WrongTokenKindError(UnauthenticatedError):
    """Token is valid but was minted for a different purpose."""
    reason = "wrong_token_kind"


class CodeNotFoundError(UnauthenticatedError):
    """One-time code is unknown, expired or already consumed."""
    reason = "code_not_found"


class ForbiddenError(ServiceError):
    """Access denied - acting on another user's resource (403)."""
    kind = ErrorKind.FORBIDDEN
    status_code = 403


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class InternalError(ServiceError):
    """Internal server error (500); the message is never shown to clients."""
    kind = ErrorKind.INTERNAL
    status_code = 500


class ProviderExchangeFailedError(InternalError):
    """OAuth provider rejected the authorization code or was unreachable."""
    kind = ErrorKind.PROVIDER_EXCHANGE_FAILED


class ProviderProfileFetchFailedError(InternalError):
    """OAuth provider user-info request failed."""
    kind = ErrorKind.PROVIDER_PROFILE_FETCH_FAILED


class DispatchFailedError(InternalError):
    """Out-of-band delivery (email or SMS) of a one-time code failed."""


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "InvalidCredentialsError",
    "UnauthenticatedError",
    "InvalidSignatureError",
    "TokenExpiredError",
    "WrongTokenKindError",
    "CodeNotFoundError",
    "ForbiddenError",
    "NotFoundError",
    "InternalError",
    "ProviderExchangeFailedError",
    "ProviderProfileFetchFailedError",
    "DispatchFailedError",
]
