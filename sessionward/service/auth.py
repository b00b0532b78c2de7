from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, List, NoReturn, Optional, Protocol

from sessionward.config import ClientLabel, Settings
from sessionward.logging import get_logger, log_security_event
from sessionward.service.clock import Clock
from sessionward.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    ReplayDetectedError,
    RefreshTokenSupersededError,
    SessionExpiredError,
    SessionRevokedError,
    StoreUnavailableError,
)
from sessionward.service.hasher import CredentialHasher
from sessionward.service.tokens import TokenCodec
from sessionward.storage.errors import (
    ConstraintViolation,
    RejectionReason,
    RotationRejected,
    StoreUnavailable,
)
from sessionward.storage.models import (
    CredentialRecord,
    NewSession,
    PublicProfile,
    Rotation,
    SessionRecord,
)


class UserDirectory(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        now: datetime,
        *,
        display_name: Optional[str] = None,
    ) -> CredentialRecord: ...

    def find_by_email(self, email: str) -> Optional[CredentialRecord]: ...

    def get_credentials(self, user_id: str) -> Optional[CredentialRecord]: ...

    def find_by_id(self, user_id: str) -> Optional[PublicProfile]: ...

    def update_password_hash(
        self, user_id: str, password_hash: str, now: datetime
    ) -> bool: ...


class SessionStore(Protocol):
    def create_session(
        self, subject_id: str, client_label: str, now: datetime, ttl: timedelta
    ) -> NewSession: ...

    def rotate(
        self,
        session_id: str,
        presented_token: str,
        now: datetime,
        *,
        reuse_grace: timedelta = timedelta(0),
    ) -> Rotation: ...

    def revoke_session(
        self, session_id: str, now: datetime, reason: str = "logout"
    ) -> bool: ...

    def revoke_subject_sessions(
        self, subject_id: str, now: datetime, reason: str
    ) -> int: ...

    def get_session(self, session_id: str) -> Optional[SessionRecord]: ...

    def list_subject_sessions(self, subject_id: str) -> List[SessionRecord]: ...

    def ping(self) -> bool: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    epoch: int
    expires_in_seconds: int
    token_type: str = "bearer"


class AuthService:
    """Registration, login, refresh rotation and revocation.

    The service owns no state of its own: credentials live in the user
    directory, sessions in the session store, and signing keys in the codec.
    """

    def __init__(
        self,
        users: UserDirectory,
        sessions: SessionStore,
        hasher: CredentialHasher,
        codec: TokenCodec,
        clock: Clock,
        settings: Settings,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.hasher = hasher
        self.codec = codec
        self.clock = clock
        self.settings = settings
        self.logger = get_logger(__name__)
        self.reuse_grace = timedelta(seconds=settings.refresh_reuse_grace_seconds)

    @contextmanager
    def _store_call(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StoreUnavailable as exc:
            self.logger.error(
                "store_unavailable",
                operation=operation,
                backend=exc.backend,
                error=exc.message,
            )
            raise StoreUnavailableError(detail={"retryable": True}) from exc

    def _normalize_label(self, client_label: Optional[str]) -> str:
        label = (client_label or ClientLabel.WEB.value).lower()
        if label not in {c.value for c in ClientLabel}:
            label = ClientLabel.WEB.value
        return label

    def _session_ttl(self, client_label: str) -> timedelta:
        return timedelta(minutes=self.settings.session_ttl_minutes(client_label))

    def _issue_pair(
        self, record: SessionRecord, refresh_token: str, now: datetime
    ) -> TokenPair:
        access_token = self.codec.issue(
            record.subject_id, record.id, record.rotation_counter, now
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=record.id,
            epoch=record.rotation_counter,
            expires_in_seconds=int(self.codec.ttl.total_seconds()),
        )

    def _start_session(self, subject_id: str, client_label: str) -> TokenPair:
        now = self.clock.now()
        with self._store_call("create_session"):
            created = self.sessions.create_session(
                subject_id, client_label, now, self._session_ttl(client_label)
            )
        self.logger.info(
            "session_created",
            user_id=subject_id,
            session_id=created.record.id,
            client_label=client_label,
            expires_at=created.record.expires_at.isoformat(),
        )
        return self._issue_pair(created.record, created.refresh_token, now)

    async def register(
        self,
        email: str,
        password: str,
        *,
        client_label: str = "web",
        display_name: Optional[str] = None,
    ) -> TokenPair:
        if not self.settings.allow_registration:
            raise ForbiddenError("registration is disabled")
        label = self._normalize_label(client_label)
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        try:
            with self._store_call("create_user"):
                user = self.users.create_user(
                    email, password_hash, self.clock.now(), display_name=display_name
                )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        return self._start_session(user.id, label)

    async def login(
        self, email: str, password: str, *, client_label: str = "web"
    ) -> TokenPair:
        label = self._normalize_label(client_label)
        with self._store_call("find_by_email"):
            user = self.users.find_by_email(email)
        if user is None:
            # Same Argon2 cost as a real mismatch so timing does not reveal accounts
            await asyncio.to_thread(self.hasher.verify_dummy, password)
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()
        verified = await asyncio.to_thread(
            self.hasher.verify, password, user.password_hash
        )
        if not verified:
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentialsError()

        if self.hasher.needs_rehash(user.password_hash):
            new_hash = await asyncio.to_thread(self.hasher.hash, password)
            with self._store_call("update_password_hash"):
                self.users.update_password_hash(user.id, new_hash, self.clock.now())
            self.logger.info("password_rehashed", user_id=user.id)

        pair = self._start_session(user.id, label)
        self.logger.info("login_succeeded", user_id=user.id, session_id=pair.session_id)
        return pair

    async def refresh(self, session_id: str, refresh_token: str) -> TokenPair:
        now = self.clock.now()
        try:
            with self._store_call("rotate"):
                rotation = self.sessions.rotate(
                    session_id, refresh_token, now, reuse_grace=self.reuse_grace
                )
        except RotationRejected as exc:
            self._raise_for_rejection(session_id, exc.reason)
        self.logger.info(
            "session_rotated",
            session_id=session_id,
            user_id=rotation.record.subject_id,
            epoch=rotation.epoch,
        )
        return self._issue_pair(rotation.record, rotation.refresh_token, now)

    def _raise_for_rejection(self, session_id: str, reason: RejectionReason) -> NoReturn:
        if reason == RejectionReason.REPLAY:
            # The session is already revoked; a failed lookup only thins the log
            try:
                record = self.sessions.get_session(session_id)
            except StoreUnavailable as exc:
                self.logger.warning(
                    "replay_lookup_failed", session_id=session_id, error=exc.message
                )
                record = None
            log_security_event(
                "refresh_token_replay_detected",
                logger=self.logger,
                session_id=session_id,
                user_id=record.subject_id if record else None,
                epoch=record.rotation_counter if record else None,
            )
            raise ReplayDetectedError()
        self.logger.info("refresh_rejected", session_id=session_id, reason=reason.value)
        if reason == RejectionReason.EXPIRED:
            raise SessionExpiredError()
        if reason == RejectionReason.SUPERSEDED:
            raise RefreshTokenSupersededError()
        raise SessionRevokedError()

    async def logout(self, session_id: str) -> None:
        with self._store_call("revoke_session"):
            revoked = self.sessions.revoke_session(
                session_id, self.clock.now(), reason="logout"
            )
        self.logger.info("session_logout", session_id=session_id, revoked=revoked)

    async def logout_all(self, subject_id: str) -> int:
        with self._store_call("revoke_subject_sessions"):
            count = self.sessions.revoke_subject_sessions(
                subject_id, self.clock.now(), reason="logout_all"
            )
        self.logger.info("sessions_revoked_all", user_id=subject_id, revoked=count)
        return count

    async def change_password(
        self, subject_id: str, current_password: str, new_password: str
    ) -> int:
        with self._store_call("get_credentials"):
            user = self.users.get_credentials(subject_id)
        if user is None:
            raise NotFoundError("user not found")
        verified = await asyncio.to_thread(
            self.hasher.verify, current_password, user.password_hash
        )
        if not verified:
            self.logger.info("password_change_failed", user_id=subject_id)
            raise InvalidCredentialsError("current password is incorrect")
        new_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        now = self.clock.now()
        with self._store_call("change_password"):
            self.users.update_password_hash(subject_id, new_hash, now)
            count = self.sessions.revoke_subject_sessions(
                subject_id, now, reason="password_change"
            )
        self.logger.info("password_changed", user_id=subject_id, revoked=count)
        return count

    async def get_profile(self, subject_id: str) -> PublicProfile:
        with self._store_call("find_by_id"):
            profile = self.users.find_by_id(subject_id)
        if profile is None:
            raise NotFoundError("user not found")
        return profile


__all__ = ["UserDirectory", "SessionStore", "TokenPair", "AuthService"]
