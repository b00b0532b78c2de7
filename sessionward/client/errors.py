from __future__ import annotations

from typing import Optional


class ClientSessionError(Exception):
    """Base class for client-side session failures."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.reason = reason


class NotAuthenticated(ClientSessionError):
    """No session is held locally; log in first."""


class LoginFailed(ClientSessionError):
    """Login or registration was refused by the server."""


class ReauthenticationRequired(ClientSessionError):
    """The session can no longer be refreshed; local state has been cleared."""


class TransientError(ClientSessionError):
    """A failure that may succeed if tried again later."""


class NetworkTimeoutError(TransientError):
    """The server did not answer in time."""


class ServiceUnavailable(TransientError):
    """The server reported its backing store as unavailable (503)."""


__all__ = [
    "ClientSessionError",
    "NotAuthenticated",
    "LoginFailed",
    "ReauthenticationRequired",
    "TransientError",
    "NetworkTimeoutError",
    "ServiceUnavailable",
]
