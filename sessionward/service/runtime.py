from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionward.config import SessionBackend, Settings, get_settings, reset_settings_cache
from sessionward.logging import get_logger
from sessionward.service.auth import AuthService
from sessionward.service.clock import Clock, SystemClock
from sessionward.service.guard import AccessGuard
from sessionward.service.hasher import CredentialHasher
from sessionward.service.tokens import KeyRing, TokenCodec
from sessionward.storage.memory import MemoryStore
from sessionward.storage.postgres import PostgresStore
from sessionward.storage.redis_store import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        store=None,
        sessions=None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            session_backend=self.settings.session_backend.value,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = store or (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.sessions = sessions or self._build_session_store()

        self.hasher = CredentialHasher(
            time_cost=self.settings.argon2_time_cost,
            memory_cost_kib=self.settings.argon2_memory_cost_kib,
        )
        self.keyring = KeyRing.from_secrets(
            self.settings.jwt_secret, self.settings.jwt_previous_secrets
        )
        self.codec = TokenCodec(
            self.keyring,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
        )
        self.guard = AccessGuard(
            self.codec,
            self.sessions,
            self.clock,
            strict=self.settings.strict_revocation,
        )
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.hasher,
            self.codec,
            self.clock,
            self.settings,
        )
        logger.info(
            "runtime_init_completed",
            signing_keys=len(self.keyring),
            strict_revocation=self.settings.strict_revocation,
            refresh_reuse_grace_seconds=self.settings.refresh_reuse_grace_seconds,
        )

    def _build_session_store(self):
        if self.settings.session_backend != SessionBackend.REDIS:
            return self.store
        if not self.settings.redis_url:
            raise RuntimeError("SESSION_BACKEND=redis requires REDIS_URL to be set")
        sessions = RedisSessionStore(self.settings.redis_url)
        try:
            sessions.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_redis_init_failed",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            raise
        logger.info(
            "runtime_session_store_initialized",
            store_type="redis",
            redis_url=_mask_url_password(self.settings.redis_url),
        )
        return sessions

    def close(self) -> None:
        if isinstance(self.sessions, RedisSessionStore):
            self.sessions.client.close()
        if isinstance(self.store, PostgresStore):
            self.store.pool.close()


runtime: Runtime | None = None
# Thread-safe singleton pattern using a lock
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    Keyword overrides (``settings``, ``clock``, ``store``, ``sessions``) are
    passed to the new Runtime.
    """
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime(**overrides)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
