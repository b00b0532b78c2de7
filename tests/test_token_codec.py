"""Unit tests for access token signing and verification.

Tests for:
- Issue/verify of the versioned claim set
- Expiry boundary
- Algorithm pinning and tamper detection
- Key ring rotation grace window
"""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from sessionward.service.errors import (
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
)
from sessionward.service.tokens import KeyRing, SigningKey, TokenCodec

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _codec(active="active-secret", previous=(), **kwargs):
    return TokenCodec(
        KeyRing.from_secrets(active, previous),
        issuer=kwargs.pop("issuer", "sessionward"),
        audience=kwargs.pop("audience", "sessionward-clients"),
        ttl=kwargs.pop("ttl", timedelta(minutes=15)),
    )


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _decode(segment: str) -> dict:
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssueAndVerify:
    def test_round_trip_claims(self):
        codec = _codec()
        token = codec.issue("user-1", "sess-1", 3, NOW)

        claims = codec.verify(token, NOW + timedelta(minutes=1))

        assert claims.subject == "user-1"
        assert claims.session_id == "sess-1"
        assert claims.epoch == 3
        assert claims.version == 1
        assert claims.issued_at == NOW
        assert claims.expires_at == NOW + timedelta(minutes=15)

    def test_header_carries_kid_of_active_key(self):
        codec = _codec()
        header = _decode(codec.issue("user-1", "sess-1", 0, NOW).split(".")[0])

        assert header == {
            "alg": "HS256",
            "typ": "JWT",
            "kid": KeyRing.derive_kid("active-secret"),
        }

    def test_valid_exactly_at_expiry_and_rejected_after(self):
        codec = _codec()
        token = codec.issue("user-1", "sess-1", 0, NOW)
        expiry = NOW + timedelta(minutes=15)

        assert codec.verify(token, expiry).subject == "user-1"
        with pytest.raises(TokenExpiredError):
            codec.verify(token, expiry + timedelta(seconds=1))


class TestRejection:
    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a..c", "a.b.c.d"])
    def test_structurally_broken_tokens(self, token):
        with pytest.raises(TokenMalformedError):
            _codec().verify(token, NOW)

    def test_non_string_token(self):
        with pytest.raises(TokenMalformedError):
            _codec().verify(None, NOW)

    def test_alg_none_rejected(self):
        codec = _codec()
        _, payload, sig = codec.issue("user-1", "sess-1", 0, NOW).split(".")
        forged = f"{_b64({'alg': 'none', 'kid': KeyRing.derive_kid('active-secret')})}.{payload}.{sig}"

        with pytest.raises(TokenMalformedError):
            codec.verify(forged, NOW)

    def test_tampered_payload_fails_signature(self):
        codec = _codec()
        header, payload, sig = codec.issue("user-1", "sess-1", 0, NOW).split(".")
        claims = _decode(payload)
        claims["sub"] = "someone-else"
        tampered = f"{header}.{_b64(claims)}.{sig}"

        with pytest.raises(TokenSignatureError):
            codec.verify(tampered, NOW)

    def test_non_ascii_signature_rejected(self):
        codec = _codec()
        header, payload, _ = codec.issue("user-1", "sess-1", 0, NOW).split(".")

        with pytest.raises(TokenMalformedError):
            codec.verify(f"{header}.{payload}.\u00e9\u00e9\u00e9", NOW)

    def test_signature_errors_are_malformed_errors(self):
        """The guard only needs to catch the base class."""
        assert issubclass(TokenSignatureError, TokenMalformedError)

    def test_token_from_other_secret_rejected(self):
        token = _codec(active="someone-elses-secret").issue("user-1", "sess-1", 0, NOW)
        with pytest.raises(TokenSignatureError):
            _codec().verify(token, NOW)

    def test_wrong_audience_rejected(self):
        token = _codec(audience="other-app").issue("user-1", "sess-1", 0, NOW)
        with pytest.raises(TokenMalformedError):
            _codec().verify(token, NOW)

    def test_wrong_issuer_rejected(self):
        token = _codec(issuer="elsewhere").issue("user-1", "sess-1", 0, NOW)
        with pytest.raises(TokenMalformedError):
            _codec().verify(token, NOW)

    def test_expired_checked_before_claims(self):
        """An expired token reports expiry even if other claims are off."""
        token = _codec(audience="other-app").issue("user-1", "sess-1", 0, NOW)
        with pytest.raises(TokenExpiredError):
            _codec().verify(token, NOW + timedelta(hours=1))


class TestKeyRing:
    def test_previous_key_still_verifies(self):
        old = _codec(active="old-secret")
        token = old.issue("user-1", "sess-1", 0, NOW)

        rotated = _codec(active="new-secret", previous=["old-secret"])

        assert rotated.verify(token, NOW).subject == "user-1"

    def test_only_newest_key_signs(self):
        rotated = _codec(active="new-secret", previous=["old-secret"])
        header = _decode(rotated.issue("user-1", "sess-1", 0, NOW).split(".")[0])

        assert header["kid"] == KeyRing.derive_kid("new-secret")

    def test_dropped_key_no_longer_verifies(self):
        token = _codec(active="old-secret").issue("user-1", "sess-1", 0, NOW)
        with pytest.raises(TokenSignatureError):
            _codec(active="new-secret").verify(token, NOW)

    def test_duplicate_secrets_collapse(self):
        ring = KeyRing.from_secrets("same", ["same", "other"])
        assert len(ring) == 2
        assert ring.active.kid == KeyRing.derive_kid("same")

    def test_ring_is_bounded(self):
        keys = [SigningKey(kid=str(i), secret=b"x%d" % i) for i in range(5)]
        with pytest.raises(ValueError):
            KeyRing(keys)

    def test_ring_requires_a_key(self):
        with pytest.raises(ValueError):
            KeyRing([])

    def test_repr_hides_secret(self):
        key = SigningKey(kid="abc", secret=b"hunter2")
        assert "hunter2" not in repr(key)
