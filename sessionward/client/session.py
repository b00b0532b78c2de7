from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from sessionward.client.errors import (
    ClientSessionError,
    LoginFailed,
    NetworkTimeoutError,
    NotAuthenticated,
    ReauthenticationRequired,
    ServiceUnavailable,
    TransientError,
)
from sessionward.client.storage import StoredSession, TokenStorage
from sessionward.logging import get_logger

logger = get_logger(__name__)

LOGIN_PATH = "/v1/auth/login"
REGISTER_PATH = "/v1/auth/register"
REFRESH_PATH = "/v1/auth/refresh"
LOGOUT_PATH = "/v1/auth/logout"


def _error_payload(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    error = body.get("error") if isinstance(body, dict) else None
    return error if isinstance(error, dict) else {}


def _error_reason(response: httpx.Response) -> Optional[str]:
    details = _error_payload(response).get("details")
    if isinstance(details, dict):
        reason = details.get("reason")
        return reason if isinstance(reason, str) else None
    return None


def _requires_authentication(response: httpx.Response) -> bool:
    """True when a 401 came from the access guard rather than the endpoint."""
    if response.status_code != 401:
        return False
    return (
        _error_reason(response) == "authentication_required"
        or "WWW-Authenticate" in response.headers
    )


class SessionClient:
    """Holds one access/refresh pair and keeps it fresh.

    At most one refresh is in flight per instance: concurrent callers that
    hit a 401 share the same refresh task instead of each spending the
    refresh token, which the server would treat as replay.
    """

    client_label = "web"
    max_network_attempts = 3
    backoff_base_seconds = 0.25
    backoff_max_seconds = 5.0
    # Refresh proactively when the access token is this close to expiry
    refresh_skew_seconds = 30.0

    def __init__(
        self,
        base_url: str | httpx.URL = "",
        *,
        storage: TokenStorage,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float | httpx.Timeout = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_network_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )
        self.storage = storage
        if max_network_attempts is not None:
            self.max_network_attempts = max(1, max_network_attempts)
        if backoff_base_seconds is not None:
            self.backoff_base_seconds = backoff_base_seconds
        self._sleep = sleep
        self._clock = clock
        self._session: Optional[StoredSession] = storage.load()
        self._inflight: Optional[asyncio.Task] = None
        self.refresh_count = 0

    async def __aenter__(self) -> "SessionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def session(self) -> Optional[StoredSession]:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    def _store(self, session: StoredSession) -> None:
        self._session = session
        self.storage.save(session)

    def _clear_local(self) -> None:
        self._session = None
        self.storage.clear()

    def _session_from_response(self, response: httpx.Response) -> StoredSession:
        try:
            data = response.json()["data"]
            return StoredSession(
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
                session_id=data["session_id"],
                epoch=int(data["session_epoch"]),
                access_expires_at=self._clock() + float(data["expires_in_seconds"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise ClientSessionError(
                "unexpected token response", status_code=response.status_code
            ) from exc

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** (attempt - 1)))

    async def _send_with_retry(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying timeouts and connection failures with backoff.

        Never used for refresh: a refresh whose response was lost may already
        have consumed the token on the server.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._http.request(method, url, **kwargs)
            except (httpx.TimeoutException, httpx.NetworkError) as exc:
                logger.warning(
                    "client_request_attempt_failed",
                    method=method,
                    url=str(url),
                    attempt=attempt,
                    max_attempts=self.max_network_attempts,
                    error_type=type(exc).__name__,
                )
                if attempt >= self.max_network_attempts:
                    if isinstance(exc, httpx.TimeoutException):
                        raise NetworkTimeoutError(f"{method} {url} timed out") from exc
                    raise TransientError(f"{method} {url} failed: {exc}") from exc
                await self._sleep(self._backoff(attempt))

    async def _authenticate(self, path: str, payload: dict, expected_status: int) -> StoredSession:
        response = await self._send_with_retry("POST", path, json=payload)
        if response.status_code == expected_status:
            session = self._session_from_response(response)
            self._store(session)
            logger.info(
                "client_session_started",
                session_id=session.session_id,
                client_label=self.client_label,
            )
            return session
        error = _error_payload(response)
        if response.status_code == 503:
            raise ServiceUnavailable(
                error.get("message", "service unavailable"), status_code=503
            )
        if response.status_code in (400, 401, 403, 409, 422):
            raise LoginFailed(
                error.get("message", "login failed"),
                status_code=response.status_code,
                reason=error.get("code"),
            )
        raise ClientSessionError(
            f"unexpected status {response.status_code}", status_code=response.status_code
        )

    async def login(self, email: str, password: str) -> StoredSession:
        return await self._authenticate(
            LOGIN_PATH,
            {"email": email, "password": password, "client_label": self.client_label},
            200,
        )

    async def register(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> StoredSession:
        payload = {"email": email, "password": password, "client_label": self.client_label}
        if display_name is not None:
            payload["display_name"] = display_name
        return await self._authenticate(REGISTER_PATH, payload, 201)

    async def ensure_fresh_token(
        self, stale_access_token: Optional[str] = None
    ) -> StoredSession:
        """Return a usable session, refreshing at most once across concurrent callers.

        ``stale_access_token`` is the token the caller saw rejected. If the
        held token has already moved past it, another caller refreshed in
        the meantime and the current pair is returned without a network call.
        """
        current = self._session
        if current is None:
            raise NotAuthenticated("no session held; log in first")
        if stale_access_token is not None and current.access_token != stale_access_token:
            return current
        # No await between the check and the assignment: the event loop cannot
        # interleave another caller here, so only one task is ever created.
        if self._inflight is None:
            self._inflight = asyncio.get_running_loop().create_task(
                self._run_refresh(current)
            )
        return await asyncio.shield(self._inflight)

    async def _run_refresh(self, current: StoredSession) -> StoredSession:
        try:
            return await self._refresh(current)
        finally:
            self._inflight = None

    async def _refresh(self, current: StoredSession) -> StoredSession:
        self.refresh_count += 1
        try:
            response = await self._http.post(
                REFRESH_PATH,
                json={
                    "session_id": current.session_id,
                    "refresh_token": current.refresh_token,
                },
            )
        except httpx.TimeoutException as exc:
            # Not retried: the server may have rotated already
            logger.warning("client_refresh_timeout", session_id=current.session_id)
            raise NetworkTimeoutError("refresh timed out") from exc
        except httpx.NetworkError as exc:
            logger.warning(
                "client_refresh_network_error",
                session_id=current.session_id,
                error=str(exc),
            )
            raise TransientError(f"refresh failed: {exc}") from exc

        if response.status_code == 200:
            refreshed = self._session_from_response(response)
            if self._session is not current:
                # Logged out (or re-logged in) while the refresh was running
                raise NotAuthenticated("session changed during refresh")
            self._store(refreshed)
            logger.info(
                "client_session_refreshed",
                session_id=refreshed.session_id,
                epoch=refreshed.epoch,
            )
            return refreshed
        if response.status_code == 401:
            reason = _error_reason(response) or "Revoked"
            logger.info(
                "client_refresh_rejected", session_id=current.session_id, reason=reason
            )
            if self._session is current:
                self._clear_local()
            raise ReauthenticationRequired(
                "session can no longer be refreshed", status_code=401, reason=reason
            )
        if response.status_code == 503:
            raise ServiceUnavailable("session store unavailable", status_code=503)
        raise ClientSessionError(
            f"unexpected refresh status {response.status_code}",
            status_code=response.status_code,
        )

    async def _send_authorized(
        self, method: str, url: str, access_token: str, headers: dict, **kwargs: Any
    ) -> httpx.Response:
        merged = {**headers, "Authorization": f"Bearer {access_token}"}
        return await self._send_with_retry(method, url, headers=merged, **kwargs)

    async def authorized_request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request with the access token.

        Refreshes and retries once when the guard answers 401 authentication
        required; any other response, including an endpoint's own 401, is
        returned to the caller unchanged.
        """
        session = self._session
        if session is None:
            raise NotAuthenticated("no session held; log in first")
        headers = dict(kwargs.pop("headers", None) or {})
        if session.access_expired(self._clock(), self.refresh_skew_seconds):
            session = await self.ensure_fresh_token(stale_access_token=session.access_token)

        response = await self._send_authorized(
            method, url, session.access_token, headers, **kwargs
        )
        if not _requires_authentication(response):
            return response
        if self._session is None:
            # A concurrent refresh already failed and cleared the session
            raise ReauthenticationRequired(
                "session ended while the request was in flight",
                status_code=401,
                reason=_error_reason(response) or "authentication_required",
            )

        refreshed = await self.ensure_fresh_token(stale_access_token=session.access_token)
        retry = await self._send_authorized(
            method, url, refreshed.access_token, headers, **kwargs
        )
        if _requires_authentication(retry):
            logger.info("client_retry_unauthorized", session_id=refreshed.session_id)
            if self._session is refreshed:
                self._clear_local()
            raise ReauthenticationRequired(
                "request rejected after refresh",
                status_code=401,
                reason=_error_reason(retry) or "authentication_required",
            )
        return retry

    async def logout(self) -> None:
        """Revoke the session server-side if possible; always forget it locally."""
        session = self._session
        try:
            if session is not None:
                response = await self._http.post(
                    LOGOUT_PATH, json={"session_id": session.session_id}
                )
                if response.status_code >= 400:
                    logger.warning(
                        "client_logout_rejected",
                        session_id=session.session_id,
                        status_code=response.status_code,
                    )
        except httpx.HTTPError as exc:
            logger.warning("client_logout_request_failed", error=str(exc))
        finally:
            self._clear_local()


__all__ = ["SessionClient"]
