from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from sessionward.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StoredSession:
    access_token: str
    refresh_token: str
    session_id: str
    epoch: int
    access_expires_at: float

    def access_expired(self, now: float, skew_seconds: float = 0.0) -> bool:
        return now + skew_seconds >= self.access_expires_at

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "StoredSession":
        data = json.loads(raw)
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            session_id=data["session_id"],
            epoch=int(data["epoch"]),
            access_expires_at=float(data["access_expires_at"]),
        )


class TokenStorage(Protocol):
    def load(self) -> Optional[StoredSession]: ...

    def save(self, session: StoredSession) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStorage:
    """Keeps tokens in process memory only.

    Nothing survives a reload, so a browser-hosted console has to log in
    again after a refresh of the page. Nothing is written where other
    scripts or disk forensics could read it either.
    """

    def __init__(self) -> None:
        self._session: Optional[StoredSession] = None
        self._lock = threading.Lock()

    def load(self) -> Optional[StoredSession]:
        with self._lock:
            return self._session

    def save(self, session: StoredSession) -> None:
        with self._lock:
            self._session = session

    def clear(self) -> None:
        with self._lock:
            self._session = None


class EncryptedFileTokenStorage:
    """Fernet-encrypted token file for devices with a platform keystore.

    The key is supplied by the caller (from the OS keystore); only ciphertext
    touches disk. Writes go to a temp file in the same directory and are
    renamed into place, so a crash never leaves a half-written file.
    """

    def __init__(self, path: str | os.PathLike, key: bytes | str) -> None:
        self.path = Path(path)
        self._fernet = Fernet(key)
        self._lock = threading.Lock()

    @staticmethod
    def generate_key() -> bytes:
        return Fernet.generate_key()

    def load(self) -> Optional[StoredSession]:
        with self._lock:
            try:
                ciphertext = self.path.read_bytes()
            except FileNotFoundError:
                return None
            try:
                plaintext = self._fernet.decrypt(ciphertext)
                return StoredSession.from_json(plaintext.decode("utf-8"))
            except (InvalidToken, ValueError, KeyError) as exc:
                # Wrong key or corrupted file: the stored session is unusable
                logger.warning(
                    "token_storage_unreadable",
                    path=str(self.path),
                    error_type=type(exc).__name__,
                )
                self._remove()
                return None

    def save(self, session: StoredSession) -> None:
        ciphertext = self._fernet.encrypt(session.to_json().encode("utf-8"))
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}_", suffix=".tmp"
            )
            try:
                try:
                    os.fchmod(fd, 0o600)
                    os.write(fd, ciphertext)
                    os.fsync(fd)
                finally:
                    os.close(fd)
                os.replace(tmp_path, self.path)
            except BaseException:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise

    def clear(self) -> None:
        with self._lock:
            self._remove()

    def _remove(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


__all__ = [
    "StoredSession",
    "TokenStorage",
    "MemoryTokenStorage",
    "EncryptedFileTokenStorage",
]
