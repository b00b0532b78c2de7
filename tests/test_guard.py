"""Tests for the access guard in stateless and strict modes."""

from datetime import timedelta

import pytest

from sessionward.service.errors import AuthenticationRequiredError
from sessionward.service.guard import AccessGuard, extract_bearer
from sessionward.service.tokens import KeyRing, TokenCodec
from sessionward.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def codec():
    return TokenCodec(
        KeyRing.from_secrets("guard-secret"),
        issuer="sessionward",
        audience="sessionward-clients",
    )


def _session_token(store, codec, clock, subject="user-1"):
    created = store.create_session(subject, "web", clock.now(), timedelta(days=7))
    token = codec.issue(subject, created.record.id, 0, clock.now())
    return created, token


@pytest.mark.parametrize(
    "header,expected",
    [
        (None, None),
        ("", None),
        ("Bearer abc", "abc"),
        ("bearer   abc ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("Bearer ", None),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected


class TestStatelessGuard:
    def test_valid_token_yields_principal(self, store, codec, clock):
        created, token = _session_token(store, codec, clock)
        guard = AccessGuard(codec, store, clock)

        principal = guard.authenticate(f"Bearer {token}")

        assert principal.subject_id == "user-1"
        assert principal.session_id == created.record.id
        assert principal.epoch == 0

    @pytest.mark.parametrize("header", [None, "Basic abc", "Bearer not-a-token"])
    def test_missing_or_garbage(self, store, codec, clock, header):
        guard = AccessGuard(codec, store, clock)
        with pytest.raises(AuthenticationRequiredError) as exc_info:
            guard.authenticate(header)

        error = exc_info.value
        assert error.status_code == 401
        assert error.detail == {"reason": "authentication_required"}
        assert error.headers["WWW-Authenticate"].startswith("Bearer")

    def test_non_ascii_token_is_authentication_required(self, store, codec, clock):
        _, token = _session_token(store, codec, clock)
        forged = token.rsplit(".", 1)[0] + ".\u00e9\u00e9\u00e9"
        guard = AccessGuard(codec, store, clock)

        with pytest.raises(AuthenticationRequiredError) as exc_info:
            guard.authenticate(f"Bearer {forged}")

        assert exc_info.value.detail == {"reason": "authentication_required"}

    def test_expired_and_malformed_are_indistinguishable(self, store, codec, clock):
        _, token = _session_token(store, codec, clock)
        guard = AccessGuard(codec, store, clock)

        with pytest.raises(AuthenticationRequiredError) as malformed:
            guard.authenticate("Bearer x.y.z")
        clock.advance(minutes=16)
        with pytest.raises(AuthenticationRequiredError) as expired:
            guard.authenticate(f"Bearer {token}")

        assert malformed.value.message == expired.value.message
        assert malformed.value.detail == expired.value.detail

    def test_revoked_session_token_lives_until_expiry(self, store, codec, clock):
        created, token = _session_token(store, codec, clock)
        store.revoke_session(created.record.id, clock.now())
        guard = AccessGuard(codec, store, clock)

        assert guard.authenticate(f"Bearer {token}").session_id == created.record.id


class TestStrictGuard:
    def test_revoked_session_rejected_immediately(self, store, codec, clock):
        created, token = _session_token(store, codec, clock)
        guard = AccessGuard(codec, store, clock, strict=True)
        assert guard.authenticate(f"Bearer {token}")

        store.revoke_session(created.record.id, clock.now())

        with pytest.raises(AuthenticationRequiredError):
            guard.authenticate(f"Bearer {token}")

    def test_stale_epoch_rejected(self, store, codec, clock):
        created, token = _session_token(store, codec, clock)
        rotated = store.rotate(created.record.id, created.refresh_token, clock.now())
        guard = AccessGuard(codec, store, clock, strict=True)

        with pytest.raises(AuthenticationRequiredError):
            guard.authenticate(f"Bearer {token}")

        fresh = codec.issue("user-1", created.record.id, rotated.epoch, clock.now())
        assert guard.authenticate(f"Bearer {fresh}").epoch == 1

    def test_unknown_session_rejected(self, store, codec, clock):
        token = codec.issue("user-1", "no-such-session", 0, clock.now())
        guard = AccessGuard(codec, store, clock, strict=True)

        with pytest.raises(AuthenticationRequiredError):
            guard.authenticate(f"Bearer {token}")

    def test_subject_mismatch_rejected(self, store, codec, clock):
        created, _ = _session_token(store, codec, clock)
        forged = codec.issue("user-2", created.record.id, 0, clock.now())
        guard = AccessGuard(codec, store, clock, strict=True)

        with pytest.raises(AuthenticationRequiredError):
            guard.authenticate(f"Bearer {forged}")
