"""Session store behaviour under the in-memory backend.

Covers rotation exclusivity under real thread contention, replay revocation,
the absolute ceiling, idempotent logout and subject-wide revocation.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from sessionward.storage.errors import ConstraintViolation, RejectionReason, RotationRejected
from sessionward.storage.memory import MemoryStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
TTL = timedelta(days=7)


@pytest.fixture
def store():
    return MemoryStore()


def _rotate_outcome(store, session_id, token, now=NOW):
    try:
        return store.rotate(session_id, token, now)
    except RotationRejected as exc:
        return exc.reason


class TestUserDirectory:
    def test_create_and_find_user(self, store):
        user = store.create_user("A@X.com", "hash", NOW, display_name="Ada")

        assert user.email == "a@x.com"
        assert store.find_by_email("a@x.com").id == user.id
        assert store.find_by_email(" A@X.COM ").id == user.id
        profile = store.find_by_id(user.id)
        assert profile.display_name == "Ada"
        assert not hasattr(profile, "password_hash")

    def test_duplicate_email_rejected(self, store):
        store.create_user("a@x.com", "hash", NOW)
        with pytest.raises(ConstraintViolation):
            store.create_user("A@x.com", "other", NOW)

    def test_update_password_hash(self, store):
        user = store.create_user("a@x.com", "hash", NOW)
        later = NOW + timedelta(hours=1)

        assert store.update_password_hash(user.id, "new-hash", later) is True
        creds = store.get_credentials(user.id)
        assert creds.password_hash == "new-hash"
        assert creds.updated_at == later
        assert store.update_password_hash("missing", "x", later) is False

    def test_returned_records_are_copies(self, store):
        user = store.create_user("a@x.com", "hash", NOW)
        user.password_hash = "tampered"
        assert store.get_credentials(user.id).password_hash == "hash"


class TestRotation:
    def test_create_session_starts_at_epoch_zero(self, store):
        created = store.create_session("user-1", "web", NOW, TTL)

        assert created.record.rotation_counter == 0
        assert created.record.expires_at == NOW + TTL
        assert created.refresh_token not in created.record.current_token_hash

    def test_rotation_advances_epoch(self, store):
        created = store.create_session("user-1", "web", NOW, TTL)

        first = store.rotate(created.record.id, created.refresh_token, NOW)
        second = store.rotate(created.record.id, first.refresh_token, NOW)

        assert (first.epoch, second.epoch) == (1, 2)
        assert store.get_session(created.record.id).rotation_counter == 2

    def test_concurrent_rotation_has_single_winner(self, store):
        created = store.create_session("user-1", "web", NOW, TTL)
        session_id = created.record.id
        workers = 16
        barrier = threading.Barrier(workers)

        def attempt(_):
            barrier.wait()
            return _rotate_outcome(store, session_id, created.refresh_token)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(attempt, range(workers)))

        winners = [o for o in outcomes if not isinstance(o, RejectionReason)]
        losers = [o for o in outcomes if isinstance(o, RejectionReason)]
        assert len(winners) == 1
        # The first loser flags replay and revokes; the rest see a revoked session
        assert set(losers) <= {RejectionReason.REPLAY, RejectionReason.REVOKED}
        assert RejectionReason.REPLAY in losers
        assert store.get_session(session_id).revoked is True

    def test_rotation_on_distinct_sessions_is_independent(self, store):
        created = [store.create_session("user-1", "web", NOW, TTL) for _ in range(8)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(
                pool.map(
                    lambda c: store.rotate(c.record.id, c.refresh_token, NOW), created
                )
            )

        assert [r.epoch for r in results] == [1] * 8

    def test_replay_revokes_session(self, store):
        created = store.create_session("user-1", "web", NOW, TTL)
        rotated = store.rotate(created.record.id, created.refresh_token, NOW)

        with pytest.raises(RotationRejected) as exc_info:
            store.rotate(created.record.id, created.refresh_token, NOW)
        assert exc_info.value.reason == RejectionReason.REPLAY

        record = store.get_session(created.record.id)
        assert record.revoked is True
        assert record.revoked_reason == "replay"

        # Current token is dead too
        with pytest.raises(RotationRejected) as exc_info:
            store.rotate(created.record.id, rotated.refresh_token, NOW)
        assert exc_info.value.reason == RejectionReason.REVOKED

    def test_absolute_ceiling_regardless_of_recent_rotation(self, store):
        created = store.create_session("user-1", "web", NOW, timedelta(hours=1))
        token = created.refresh_token
        moment = NOW
        for _ in range(5):
            moment += timedelta(minutes=11)
            token = store.rotate(created.record.id, token, moment).refresh_token

        with pytest.raises(RotationRejected) as exc_info:
            store.rotate(created.record.id, token, NOW + timedelta(hours=1, seconds=1))
        assert exc_info.value.reason == RejectionReason.EXPIRED
        assert store.get_session(created.record.id).revoked_reason == "expired"

    def test_unknown_session(self, store):
        with pytest.raises(RotationRejected) as exc_info:
            store.rotate("missing", "token", NOW)
        assert exc_info.value.reason == RejectionReason.NOT_FOUND

    def test_grace_window_does_not_revoke(self, store):
        created = store.create_session("user-1", "web", NOW, TTL)
        rotated = store.rotate(created.record.id, created.refresh_token, NOW)

        with pytest.raises(RotationRejected) as exc_info:
            store.rotate(
                created.record.id,
                created.refresh_token,
                NOW + timedelta(seconds=2),
                reuse_grace=timedelta(seconds=5),
            )
        assert exc_info.value.reason == RejectionReason.SUPERSEDED
        assert store.get_session(created.record.id).revoked is False

        follow_up = store.rotate(created.record.id, rotated.refresh_token, NOW)
        assert follow_up.epoch == 2


class TestRevocation:
    def test_logout_is_idempotent(self, store):
        created = store.create_session("user-1", "web", NOW, TTL)

        assert store.revoke_session(created.record.id, NOW) is True
        assert store.revoke_session(created.record.id, NOW) is False
        assert store.revoke_session("missing", NOW) is False

        record = store.get_session(created.record.id)
        assert record.revoked is True
        assert record.revoked_reason == "logout"

    def test_revoke_subject_sessions_fans_out(self, store):
        sessions = [store.create_session("user-1", "web", NOW, TTL) for _ in range(3)]
        other = store.create_session("user-2", "mobile", NOW, TTL)
        store.revoke_session(sessions[0].record.id, NOW)

        count = store.revoke_subject_sessions("user-1", NOW, "password_change")

        assert count == 2
        assert all(r.revoked for r in store.list_subject_sessions("user-1"))
        for created in sessions:
            with pytest.raises(RotationRejected) as exc_info:
                store.rotate(created.record.id, created.refresh_token, NOW)
            assert exc_info.value.reason == RejectionReason.REVOKED
        assert store.get_session(other.record.id).revoked is False

    def test_list_subject_sessions(self, store):
        ids = {store.create_session("user-1", "web", NOW, TTL).record.id for _ in range(2)}
        assert {r.id for r in store.list_subject_sessions("user-1")} == ids
        assert store.list_subject_sessions("nobody") == []
