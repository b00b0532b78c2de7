from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionward.logging import get_logger

logger = get_logger(__name__)

# Upper bound on verification keys kept alive for rotation grace (active + previous)
MAX_SIGNING_KEYS = 4


class SessionBackend(str, Enum):
    """Where refresh-token session records live.

    - STORE: same backend as the user directory (memory or Postgres)
    - REDIS: dedicated Redis keyspace with WATCH/MULTI compare-and-swap
    """

    STORE = "store"
    REDIS = "redis"


class ClientLabel(str, Enum):
    """Client platforms that can own a session."""

    WEB = "web"
    MOBILE = "mobile"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and credential service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionward", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    session_backend: SessionBackend = env_field(
        SessionBackend.STORE,
        "SESSION_BACKEND",
        description="Session record backend: 'store' (user store) or 'redis'",
    )
    state_dir: str = env_field("/var/lib/sessionward", "STATE_DIR")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_previous_secrets: list[str] = env_field(
        [],
        "JWT_PREVIOUS_SECRETS",
        description="Comma-separated retired signing secrets still accepted for verification",
    )
    jwt_issuer: str = env_field("sessionward", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionward-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    # Absolute session ceilings per client platform; never extended by rotation
    session_ttl_minutes_web: int = env_field(
        60 * 24 * 7, "SESSION_TTL_MINUTES_WEB", gt=0
    )
    session_ttl_minutes_mobile: int = env_field(
        60 * 24 * 30, "SESSION_TTL_MINUTES_MOBILE", gt=0
    )
    refresh_reuse_grace_seconds: int = env_field(
        0,
        "REFRESH_REUSE_GRACE_SECONDS",
        ge=0,
        description=(
            "Window in which re-presenting the just-rotated refresh token is answered "
            "as 'superseded' instead of revoking the session. 0 disables the window."
        ),
    )
    strict_revocation: bool = env_field(
        False,
        "STRICT_REVOCATION",
        description=(
            "Check the session record on every protected request so logout takes "
            "effect before the access token expires"
        ),
    )
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")
    password_min_length: int = env_field(6, "PASSWORD_MIN_LENGTH", ge=1)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost_kib: int = env_field(65536, "ARGON2_MEMORY_COST_KIB", ge=32)
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    def session_ttl_minutes(self, client_label: str) -> int:
        if (client_label or "").lower() == ClientLabel.MOBILE.value:
            return self.session_ttl_minutes_mobile
        return self.session_ttl_minutes_web

    @field_validator("session_backend")
    @classmethod
    def _validate_session_backend(cls, value: SessionBackend) -> SessionBackend:
        return SessionBackend(value)

    @field_validator("jwt_previous_secrets", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_previous_secrets")
    @classmethod
    def _bound_previous_secrets(cls, value: list[str]) -> list[str]:
        if len(value) > MAX_SIGNING_KEYS - 1:
            raise ValueError(
                f"at most {MAX_SIGNING_KEYS - 1} previous signing secrets are supported"
            )
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        state_dir = Path(os.getenv("STATE_DIR", "/var/lib/sessionward"))
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except Exception as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(state_dir),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except Exception as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            # Atomic write: temp file in the same directory, then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except Exception as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make STATE_DIR writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
