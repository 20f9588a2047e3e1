from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP ``status_code``, a stable envelope
    ``error_code`` and, for gate denials, a machine-stable ``reason``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - server_error (500/503)

    ``validation_error`` and ``conflict`` envelopes come from request
    validation and storage constraint handlers.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: Optional[str] = None
    default_message: str = "request rejected"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = dict(detail or {})
        if self.reason and "reason" not in self.detail:
            self.detail["reason"] = self.reason


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    reason = "authentication_required"
    default_message = "authentication required"


class InvalidTokenError(AuthenticationError):
    reason = "invalid_token"
    default_message = "invalid token"


class SessionRevokedError(AuthenticationError):
    reason = "session_revoked"
    default_message = "session revoked"


class AccountNotFoundError(AuthenticationError):
    reason = "account_not_found"
    default_message = "account not found"


class SessionExpiredError(AuthenticationError):
    reason = "session_expired"
    default_message = "session expired"


class InvalidCredentialsError(AuthenticationError):
    reason = "invalid_credentials"
    default_message = "invalid access code"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    reason = "forbidden"
    default_message = "access denied"


class AccountRestrictedError(ForbiddenError):
    reason = "account_restricted"
    default_message = "account revoked or banned"


class InsufficientRoleError(ForbiddenError):
    reason = "insufficient_role"
    default_message = "insufficient role"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    reason = "rate_limited"
    default_message = "rate limit exceeded"


class TooManyAttemptsError(RateLimitedError):
    reason = "too_many_attempts"
    default_message = "too many failed attempts, try again later"

    def __init__(self, message: Optional[str] = None, *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(0, int(retry_after))
        self.detail.setdefault("retry_after", self.retry_after)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


class StoreUnavailableError(ServerError):
    """Backing store unreachable; an infrastructure fault, not a denial (503)."""
    status_code = 503
    reason = "store_unavailable"
    default_message = "service temporarily unavailable"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidTokenError",
    "SessionRevokedError",
    "AccountNotFoundError",
    "SessionExpiredError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "AccountRestrictedError",
    "InsufficientRoleError",
    "NotFoundError",
    "RateLimitedError",
    "TooManyAttemptsError",
    "ServerError",
    "StoreUnavailableError",
]
