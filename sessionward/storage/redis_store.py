from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, List, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from sessionward.logging import get_logger
from sessionward.storage.common import (
    hash_token,
    plan_rotation,
    revoke_record,
    session_from_dict,
    session_to_dict,
)
from sessionward.storage.errors import StoreUnavailable
from sessionward.storage.models import (
    NewSession,
    Rotation,
    SessionRecord,
    new_refresh_token,
)

# Records outlive their expiry by a day so late refreshes still get a
# precise "expired" answer before Redis collects the key
_RETENTION_AFTER_EXPIRY = timedelta(days=1)


class RedisSessionStore:
    """Session records in Redis with optimistic compare-and-swap rotation.

    ``rotate`` WATCHes the record key, evaluates the rotation and writes the
    result inside MULTI/EXEC; a concurrent writer aborts the EXEC and the
    attempt is replayed against the fresh record.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        key_prefix: str = "auth",
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.key_prefix = key_prefix
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _session_key(self, session_id: str) -> str:
        return f"{self.key_prefix}:refresh_session:{session_id}"

    def _subject_key(self, subject_id: str) -> str:
        return f"{self.key_prefix}:subject_sessions:{subject_id}"

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: datetime) -> int:
        retained_until = expires_at + _RETENTION_AFTER_EXPIRY
        return max(1, int((retained_until - now).total_seconds()))

    @staticmethod
    def _dumps(record: SessionRecord) -> str:
        return json.dumps(session_to_dict(record), separators=(",", ":"))

    @staticmethod
    def _loads(raw: Optional[str]) -> Optional[SessionRecord]:
        if not raw:
            return None
        return session_from_dict(json.loads(raw))

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self.logger.error("redis_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc), backend="redis") from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def ping(self) -> bool:
        with self._guard():
            return bool(self.client.ping())

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
        key_ttl = self._ttl_seconds(record.expires_at, now)
        subject_key = self._subject_key(subject_id)
        with self._guard():
            index_ttl = self.client.ttl(subject_key)
            pipe = self.client.pipeline()
            pipe.set(self._session_key(record.id), self._dumps(record), ex=key_ttl)
            # Track session in subject's set for bulk revocation; the set must
            # live as long as its longest-lived member
            pipe.sadd(subject_key, record.id)
            if index_ttl < key_ttl:
                pipe.expire(subject_key, key_ttl)
            pipe.execute()
        return NewSession(record=record, refresh_token=token)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._guard():
            return self._loads(self.client.get(self._session_key(session_id)))

    def list_subject_sessions(self, subject_id: str) -> List[SessionRecord]:
        with self._guard():
            session_ids = sorted(self.client.smembers(self._subject_key(subject_id)))
            if not session_ids:
                return []
            raws = self.client.mget([self._session_key(sid) for sid in session_ids])
        return [record for record in map(self._loads, raws) if record is not None]

    def rotate(
        self,
        session_id: str,
        presented_token: str,
        now: datetime,
        *,
        reuse_grace: timedelta = timedelta(0),
    ) -> Rotation:
        key = self._session_key(session_id)

        def _apply(pipe):
            record = self._loads(pipe.get(key))
            plan = plan_rotation(record, presented_token, now, reuse_grace)
            if plan.updated is not None:
                pipe.multi()
                pipe.set(
                    key,
                    self._dumps(plan.updated),
                    ex=self._ttl_seconds(plan.updated.expires_at, now),
                )
            return plan

        with self._guard():
            plan = self.client.transaction(_apply, key, value_from_callable=True)
        # Raised only after EXEC has committed any revocation
        plan.raise_if_rejected(session_id)
        return Rotation(
            refresh_token=plan.refresh_token,
            epoch=plan.updated.rotation_counter,
            record=plan.updated,
        )

    def revoke_session(self, session_id: str, now: datetime, reason: str = "logout") -> bool:
        key = self._session_key(session_id)

        def _apply(pipe):
            record = self._loads(pipe.get(key))
            if record is None or record.revoked:
                return False
            pipe.multi()
            pipe.set(
                key,
                self._dumps(revoke_record(record, now, reason)),
                ex=self._ttl_seconds(record.expires_at, now),
            )
            return True

        with self._guard():
            return self.client.transaction(_apply, key, value_from_callable=True)

    def revoke_subject_sessions(self, subject_id: str, now: datetime, reason: str) -> int:
        with self._guard():
            session_ids = self.client.smembers(self._subject_key(subject_id))
        return sum(1 for sid in session_ids if self.revoke_session(sid, now, reason))


__all__ = ["RedisSessionStore"]
