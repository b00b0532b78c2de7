"""Common storage utilities shared between the memory, postgres and redis
session store implementations.

The rotation decision lives here as one pure function so every backend
applies identical rules; each backend only supplies the atomicity around it.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sessionward.storage.errors import RejectionReason, RotationRejected
from sessionward.storage.models import SessionRecord, new_refresh_token

REVOKE_REASONS = frozenset(
    {"logout", "logout_all", "password_change", "replay", "expired"}
)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def tokens_match(presented_hash: str, stored_hash: Optional[str]) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(presented_hash, stored_hash)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def revoke_record(record: SessionRecord, now: datetime, reason: str) -> SessionRecord:
    if reason not in REVOKE_REASONS:
        raise ValueError(f"unknown revocation reason: {reason}")
    return replace(record, revoked=True, revoked_at=now, revoked_reason=reason)


@dataclass(frozen=True)
class RotationPlan:
    """Outcome of evaluating one refresh attempt against a session record.

    ``updated`` is the record to write back (``None`` when nothing changes).
    ``rejection`` is set when the attempt fails; ``refresh_token`` when it
    succeeds.
    """

    updated: Optional[SessionRecord]
    refresh_token: Optional[str] = None
    rejection: Optional[RejectionReason] = None

    def raise_if_rejected(self, session_id: str) -> None:
        if self.rejection is not None:
            raise RotationRejected(self.rejection, session_id)


def plan_rotation(
    record: Optional[SessionRecord],
    presented_token: str,
    now: datetime,
    reuse_grace: timedelta = timedelta(0),
) -> RotationPlan:
    if record is None:
        return RotationPlan(updated=None, rejection=RejectionReason.NOT_FOUND)
    if record.revoked:
        return RotationPlan(updated=None, rejection=RejectionReason.REVOKED)
    if now > record.expires_at:
        return RotationPlan(
            updated=revoke_record(record, now, "expired"),
            rejection=RejectionReason.EXPIRED,
        )

    presented_hash = hash_token(presented_token or "")
    if tokens_match(presented_hash, record.current_token_hash):
        new_token = new_refresh_token()
        return RotationPlan(
            updated=replace(
                record,
                current_token_hash=hash_token(new_token),
                previous_token_hash=record.current_token_hash,
                rotation_counter=record.rotation_counter + 1,
                last_refreshed_at=now,
            ),
            refresh_token=new_token,
        )

    if (
        reuse_grace > timedelta(0)
        and record.last_refreshed_at is not None
        and now - record.last_refreshed_at <= reuse_grace
        and tokens_match(presented_hash, record.previous_token_hash)
    ):
        return RotationPlan(updated=None, rejection=RejectionReason.SUPERSEDED)

    return RotationPlan(
        updated=revoke_record(record, now, "replay"),
        rejection=RejectionReason.REPLAY,
    )


def session_to_dict(record: SessionRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "subject_id": record.subject_id,
        "current_token_hash": record.current_token_hash,
        "previous_token_hash": record.previous_token_hash,
        "rotation_counter": record.rotation_counter,
        "issued_at": record.issued_at.isoformat(),
        "last_refreshed_at": (
            record.last_refreshed_at.isoformat() if record.last_refreshed_at else None
        ),
        "expires_at": record.expires_at.isoformat(),
        "revoked": record.revoked,
        "revoked_at": record.revoked_at.isoformat() if record.revoked_at else None,
        "revoked_reason": record.revoked_reason,
        "client_label": record.client_label,
    }


def _parse_dt(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def session_from_dict(data: Dict[str, Any]) -> SessionRecord:
    return SessionRecord(
        id=data["id"],
        subject_id=data["subject_id"],
        current_token_hash=data["current_token_hash"],
        previous_token_hash=data.get("previous_token_hash"),
        rotation_counter=int(data.get("rotation_counter") or 0),
        issued_at=_parse_dt(data["issued_at"]),
        last_refreshed_at=_parse_dt(data.get("last_refreshed_at")),
        expires_at=_parse_dt(data["expires_at"]),
        revoked=bool(data.get("revoked")),
        revoked_at=_parse_dt(data.get("revoked_at")),
        revoked_reason=data.get("revoked_reason"),
        client_label=data.get("client_label") or "web",
    )


__all__ = [
    "REVOKE_REASONS",
    "hash_token",
    "tokens_match",
    "normalize_email",
    "revoke_record",
    "RotationPlan",
    "plan_rotation",
    "session_to_dict",
    "session_from_dict",
]
