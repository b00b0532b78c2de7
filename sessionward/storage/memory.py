from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from sessionward.logging import get_logger
from sessionward.storage.common import (
    hash_token,
    normalize_email,
    plan_rotation,
    revoke_record,
)
from sessionward.storage.errors import (
    ConstraintViolation,
    RejectionReason,
    RotationRejected,
)
from sessionward.storage.models import (
    CredentialRecord,
    NewSession,
    PublicProfile,
    Rotation,
    SessionRecord,
    new_refresh_token,
)


class MemoryStore:
    """In-process user directory and session store.

    Session operations serialize per session id: each record has its own
    lock, and the short ``_index_lock`` only guards the dictionaries that map
    ids to records and locks. Rotations on different sessions never contend.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, CredentialRecord] = {}
        self._user_ids_by_email: Dict[str, str] = {}
        # RLock for user data to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()

        self.sessions: Dict[str, SessionRecord] = {}
        self._session_locks: Dict[str, threading.Lock] = {}
        self._sessions_by_subject: Dict[str, Set[str]] = {}
        self._index_lock = threading.Lock()

    def ping(self) -> bool:
        return True

    # user directory
    def create_user(
        self,
        email: str,
        password_hash: str,
        now: datetime,
        *,
        display_name: Optional[str] = None,
    ) -> CredentialRecord:
        key = normalize_email(email)
        with self._data_lock:
            if key in self._user_ids_by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            record = CredentialRecord.new(
                key, password_hash, now, display_name=display_name
            )
            self.users[record.id] = record
            self._user_ids_by_email[key] = record.id
            return replace(record)

    def find_by_email(self, email: str) -> Optional[CredentialRecord]:
        with self._data_lock:
            user_id = self._user_ids_by_email.get(normalize_email(email))
            record = self.users.get(user_id) if user_id else None
            return replace(record) if record else None

    def get_credentials(self, user_id: str) -> Optional[CredentialRecord]:
        with self._data_lock:
            record = self.users.get(user_id)
            return replace(record) if record else None

    def find_by_id(self, user_id: str) -> Optional[PublicProfile]:
        with self._data_lock:
            record = self.users.get(user_id)
            return record.to_profile() if record else None

    def update_password_hash(self, user_id: str, password_hash: str, now: datetime) -> bool:
        with self._data_lock:
            record = self.users.get(user_id)
            if not record:
                return False
            self.users[user_id] = replace(
                record, password_hash=password_hash, updated_at=now
            )
            return True

    # sessions
    def _lock_for(self, session_id: str) -> Optional[threading.Lock]:
        with self._index_lock:
            return self._session_locks.get(session_id)

    def _load(self, session_id: str) -> Optional[SessionRecord]:
        with self._index_lock:
            return self.sessions.get(session_id)

    def _save(self, record: SessionRecord) -> None:
        with self._index_lock:
            self.sessions[record.id] = record

    def create_session(
        self,
        subject_id: str,
        client_label: str,
        now: datetime,
        ttl: timedelta,
    ) -> NewSession:
        token = new_refresh_token()
        record = SessionRecord.new(
            subject_id, hash_token(token), now, ttl, client_label=client_label
        )
        with self._index_lock:
            self.sessions[record.id] = record
            self._session_locks[record.id] = threading.Lock()
            self._sessions_by_subject.setdefault(subject_id, set()).add(record.id)
        return NewSession(record=replace(record), refresh_token=token)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        record = self._load(session_id)
        return replace(record) if record else None

    def list_subject_sessions(self, subject_id: str) -> List[SessionRecord]:
        with self._index_lock:
            ids = sorted(self._sessions_by_subject.get(subject_id, ()))
            records = [self.sessions[sid] for sid in ids if sid in self.sessions]
        return [replace(record) for record in records]

    def rotate(
        self,
        session_id: str,
        presented_token: str,
        now: datetime,
        *,
        reuse_grace: timedelta = timedelta(0),
    ) -> Rotation:
        lock = self._lock_for(session_id)
        if lock is None:
            raise RotationRejected(RejectionReason.NOT_FOUND, session_id)
        with lock:
            plan = plan_rotation(
                self._load(session_id), presented_token, now, reuse_grace
            )
            if plan.updated is not None:
                self._save(plan.updated)
        plan.raise_if_rejected(session_id)
        record = plan.updated
        return Rotation(
            refresh_token=plan.refresh_token,
            epoch=record.rotation_counter,
            record=replace(record),
        )

    def revoke_session(self, session_id: str, now: datetime, reason: str = "logout") -> bool:
        lock = self._lock_for(session_id)
        if lock is None:
            return False
        with lock:
            record = self._load(session_id)
            if record is None or record.revoked:
                return False
            self._save(revoke_record(record, now, reason))
        return True

    def revoke_subject_sessions(self, subject_id: str, now: datetime, reason: str) -> int:
        with self._index_lock:
            ids = list(self._sessions_by_subject.get(subject_id, ()))
        return sum(1 for sid in ids if self.revoke_session(sid, now, reason))


__all__ = ["MemoryStore"]
