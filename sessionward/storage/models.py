from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


def new_refresh_token() -> str:
    return secrets.token_urlsafe(32)


@dataclass
class CredentialRecord:
    id: str
    email: str
    password_hash: str
    created_at: datetime
    updated_at: datetime
    display_name: Optional[str] = None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        now: datetime,
        display_name: Optional[str] = None,
    ) -> "CredentialRecord":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
            display_name=display_name,
        )

    def to_profile(self) -> "PublicProfile":
        return PublicProfile(
            id=self.id,
            email=self.email,
            display_name=self.display_name,
            created_at=self.created_at,
        )


@dataclass(frozen=True)
class PublicProfile:
    id: str
    email: str
    display_name: Optional[str]
    created_at: datetime


@dataclass
class SessionRecord:
    id: str
    subject_id: str
    current_token_hash: str
    issued_at: datetime
    expires_at: datetime
    client_label: str = "web"
    previous_token_hash: Optional[str] = None
    rotation_counter: int = 0
    last_refreshed_at: Optional[datetime] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        subject_id: str,
        token_hash: str,
        now: datetime,
        ttl: timedelta,
        client_label: str = "web",
    ) -> "SessionRecord":
        return cls(
            id=secrets.token_urlsafe(24),
            subject_id=subject_id,
            current_token_hash=token_hash,
            issued_at=now,
            expires_at=now + ttl,
            client_label=client_label,
        )

    @property
    def epoch(self) -> int:
        return self.rotation_counter


@dataclass(frozen=True)
class NewSession:
    record: SessionRecord
    refresh_token: str


@dataclass(frozen=True)
class Rotation:
    refresh_token: str
    epoch: int
    record: SessionRecord


__all__ = [
    "new_refresh_token",
    "CredentialRecord",
    "PublicProfile",
    "SessionRecord",
    "NewSession",
    "Rotation",
]
