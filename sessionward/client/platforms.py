from __future__ import annotations

import os
from typing import Any

import httpx

from sessionward.client.session import SessionClient
from sessionward.client.storage import EncryptedFileTokenStorage, MemoryTokenStorage


class AdminWebSessionClient(SessionClient):
    """Session client for the admin console.

    Tokens live only in process memory; a reload means logging in again.
    """

    client_label = "web"
    max_network_attempts = 3

    def __init__(self, base_url: str | httpx.URL = "", **kwargs: Any) -> None:
        kwargs.setdefault("storage", MemoryTokenStorage())
        super().__init__(base_url, **kwargs)


class MobileSessionClient(SessionClient):
    """Session client for the native app.

    Tokens persist encrypted on disk under a key from the device keystore,
    and flaky mobile links get more attempts and a longer timeout.
    """

    client_label = "mobile"
    max_network_attempts = 5
    backoff_base_seconds = 0.5

    def __init__(
        self,
        base_url: str | httpx.URL = "",
        *,
        token_path: str | os.PathLike,
        encryption_key: bytes | str,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("storage", EncryptedFileTokenStorage(token_path, encryption_key))
        kwargs.setdefault("timeout", httpx.Timeout(20.0, connect=10.0))
        super().__init__(base_url, **kwargs)


__all__ = ["AdminWebSessionClient", "MobileSessionClient"]
