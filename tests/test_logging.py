"""Tests for log redaction."""

import pytest

from sessionward.logging import _redact_pii


@pytest.mark.parametrize(
    "key", ["presented_token", "refresh_token", "new_password", "jwt_secret", "email"]
)
def test_sensitive_keys_are_masked(key):
    event = _redact_pii(None, "info", {"event": "x", key: "abcdefghijkl"})
    assert event[key] == "ab***kl"


def test_short_values_fully_masked():
    assert _redact_pii(None, "info", {"token": "abc"})["token"] == "***"


def test_other_keys_untouched():
    event = _redact_pii(None, "info", {"event": "x", "session_id": "sess-1", "epoch": 2})
    assert event == {"event": "x", "session_id": "sess-1", "epoch": 2}
