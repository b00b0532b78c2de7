"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from sessionward.config import (
    SessionBackend,
    Settings,
    get_settings,
    reset_settings_cache,
)
from sessionward.service.runtime import Runtime, _mask_url_password


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("REFRESH_REUSE_GRACE_SECONDS", "3")
    monkeypatch.setenv("STRICT_REVOCATION", "true")
    monkeypatch.setenv("JWT_PREVIOUS_SECRETS", "old-one, old-two ,")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 5
    assert settings.refresh_reuse_grace_seconds == 3
    assert settings.strict_revocation is True
    assert settings.jwt_previous_secrets == ["old-one", "old-two"]


def test_session_ttl_per_client_label():
    settings = Settings(jwt_secret="x" * 32)
    assert settings.session_ttl_minutes("web") == 60 * 24 * 7
    assert settings.session_ttl_minutes("MOBILE") == 60 * 24 * 30
    assert settings.session_ttl_minutes("") == settings.session_ttl_minutes_web


def test_previous_secrets_are_bounded():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 32, jwt_previous_secrets=["a", "b", "c", "d"])


def test_negative_grace_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 32, refresh_reuse_grace_seconds=-1)


def test_session_backend_parsed():
    settings = Settings(jwt_secret="x" * 32, session_backend="redis")
    assert settings.session_backend is SessionBackend.REDIS


def test_generated_secret_is_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("STATE_DIR", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    assert first.jwt_secret == second.jwt_secret
    assert len(first.jwt_secret) >= 32
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    cached = get_settings()
    assert get_settings() is cached

    monkeypatch.setenv("PASSWORD_MIN_LENGTH", "12")
    reset_settings_cache()

    assert get_settings().password_min_length == 12
    reset_settings_cache()


def test_redis_backend_requires_url(monkeypatch):
    settings = Settings(
        jwt_secret="x" * 32, use_memory_store=True, session_backend="redis", redis_url=None
    )
    with pytest.raises(RuntimeError):
        Runtime(settings)


def test_runtime_uses_keyring_from_settings():
    settings = Settings(
        jwt_secret="new-secret-value",
        jwt_previous_secrets=["old-secret-value"],
        use_memory_store=True,
        argon2_time_cost=1,
        argon2_memory_cost_kib=64,
    )
    runtime = Runtime(settings)

    assert len(runtime.keyring) == 2
    assert runtime.sessions is runtime.store


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:pw@localhost:6379/0", "redis://:***@localhost:6379/0"),
        ("postgresql://app:pw@db:5432/auth", "postgresql://app:***@db:5432/auth"),
        ("redis://localhost:6379", "redis://localhost:6379"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected
