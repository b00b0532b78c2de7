from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered into the error envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    headers: Dict[str, str] = {}

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = dict(headers if headers is not None else type(self).headers)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair rejected; never says which half was wrong."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenMalformedError(AuthenticationError):
    """Access token is structurally invalid or its claims are unacceptable."""

    def __init__(self, message: str = "malformed token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenSignatureError(TokenMalformedError):
    """Access token signature does not match any known key."""

    def __init__(self, message: str = "invalid token signature", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    """Access token is past its expiry."""

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationRequiredError(AuthenticationError):
    """Protected resource reached without a usable access token (401)."""

    headers = {"WWW-Authenticate": 'Bearer error="invalid_token"'}

    def __init__(self, message: str = "authentication required", **kwargs) -> None:
        kwargs.setdefault("detail", {"reason": "authentication_required"})
        super().__init__(message, **kwargs)


class RefreshRejectedError(AuthenticationError):
    """Base for refresh failures; the reason is exposed to the client."""

    reason: str = "Revoked"

    def __init__(self, message: str = "refresh rejected", **kwargs) -> None:
        kwargs.setdefault("detail", {"reason": self.reason})
        super().__init__(message, **kwargs)


class SessionRevokedError(RefreshRejectedError):
    """Session has been revoked or never existed (401)."""

    reason = "Revoked"

    def __init__(self, message: str = "session revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(RefreshRejectedError):
    """Session has passed its absolute expiry (401)."""

    reason = "Expired"

    def __init__(self, message: str = "session expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ReplayDetectedError(RefreshRejectedError):
    """A consumed refresh token was presented; the session is now revoked (401)."""

    reason = "ReplayDetected"

    def __init__(self, message: str = "refresh token reuse detected", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenSupersededError(RefreshRejectedError):
    """The just-rotated refresh token was re-presented inside the grace window (401)."""

    reason = "Superseded"

    def __init__(self, message: str = "refresh token superseded", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class StoreUnavailableError(ServiceError):
    """Backing store unreachable; safe to retry (503)."""
    status_code = 503
    error_code = "service_unavailable"

    def __init__(self, message: str = "session store unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenMalformedError",
    "TokenSignatureError",
    "TokenExpiredError",
    "AuthenticationRequiredError",
    "RefreshRejectedError",
    "SessionRevokedError",
    "SessionExpiredError",
    "ReplayDetectedError",
    "RefreshTokenSupersededError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "StoreUnavailableError",
]
