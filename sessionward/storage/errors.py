from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached (connection, pool timeout)."""

    def __init__(self, message: str, backend: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.backend = backend


class RejectionReason(str, Enum):
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    EXPIRED = "expired"
    REPLAY = "replay"
    SUPERSEDED = "superseded"


class RotationRejected(Exception):
    """Refresh token rotation refused.

    Any revocation implied by the rejection (replay, ceiling expiry) has
    already been committed by the time this is raised.
    """

    def __init__(self, reason: RejectionReason, session_id: Optional[str] = None):
        super().__init__(f"rotation rejected: {reason.value}")
        self.reason = reason
        self.session_id = session_id


__all__ = [
    "ConstraintViolation",
    "StoreUnavailable",
    "RejectionReason",
    "RotationRejected",
]
