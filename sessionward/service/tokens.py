from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Sequence

from sessionward.config import MAX_SIGNING_KEYS
from sessionward.logging import get_logger
from sessionward.service.errors import (
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
)

logger = get_logger(__name__)

CLAIMS_VERSION = 1
ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class SigningKey:
    kid: str
    secret: bytes

    def __repr__(self) -> str:
        return f"SigningKey(kid={self.kid!r})"


class KeyRing:
    """Immutable, newest-first set of HMAC keys.

    Only the first key signs; every key verifies, which gives tokens minted
    before a secret rotation a grace window until they expire.
    """

    def __init__(self, keys: Iterable[SigningKey]) -> None:
        keys = tuple(keys)
        if not keys:
            raise ValueError("key ring requires at least one signing key")
        if len(keys) > MAX_SIGNING_KEYS:
            raise ValueError(f"key ring holds at most {MAX_SIGNING_KEYS} keys")
        kids = [key.kid for key in keys]
        if len(set(kids)) != len(kids):
            raise ValueError("duplicate key id in key ring")
        self._keys = keys
        self._by_kid = {key.kid: key for key in keys}

    @staticmethod
    def derive_kid(secret: str | bytes) -> str:
        raw = secret.encode() if isinstance(secret, str) else secret
        return hashlib.sha256(raw).hexdigest()[:12]

    @classmethod
    def from_secrets(cls, active: str, previous: Sequence[str] = ()) -> "KeyRing":
        keys: list[SigningKey] = []
        seen: set[str] = set()
        for secret in [active, *previous]:
            if not secret:
                continue
            kid = cls.derive_kid(secret)
            if kid in seen:
                continue
            seen.add(kid)
            keys.append(SigningKey(kid=kid, secret=secret.encode()))
        return cls(keys)

    @property
    def active(self) -> SigningKey:
        return self._keys[0]

    @property
    def keys(self) -> tuple[SigningKey, ...]:
        return self._keys

    def get(self, kid: str) -> Optional[SigningKey]:
        return self._by_kid.get(kid)

    def __len__(self) -> int:
        return len(self._keys)


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    session_id: str
    epoch: int
    issued_at: datetime
    expires_at: datetime
    version: int = CLAIMS_VERSION


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: bytes, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
    )


def _require_int(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    # bool is an int subclass; reject it explicitly
    if not isinstance(value, int) or isinstance(value, bool):
        raise TokenMalformedError(f"claim '{key}' missing or not an integer")
    return value


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise TokenMalformedError(f"claim '{key}' missing or not a string")
    return value


class TokenCodec:
    """Signs and verifies compact HS256 access tokens. Holds no mutable state."""

    def __init__(
        self,
        keyring: KeyRing,
        *,
        issuer: str,
        audience: str,
        ttl: timedelta = timedelta(minutes=15),
    ) -> None:
        self.keyring = keyring
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl

    def issue(self, subject_id: str, session_id: str, epoch: int, now: datetime) -> str:
        key = self.keyring.active
        issued_at = int(now.timestamp())
        payload = {
            "sub": subject_id,
            "sid": session_id,
            "epoch": epoch,
            "iat": issued_at,
            "exp": issued_at + int(self.ttl.total_seconds()),
            "ver": CLAIMS_VERSION,
            "iss": self.issuer,
            "aud": self.audience,
            "token_type": ACCESS_TOKEN_TYPE,
        }
        header = {"alg": "HS256", "typ": "JWT", "kid": key.kid}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(key.secret, signing_input)}"

    def verify(self, token: str, now: datetime) -> AccessClaims:
        if not isinstance(token, str):
            raise TokenMalformedError("token must be a string")
        if not token.isascii():
            raise TokenMalformedError("token must be ASCII")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise TokenMalformedError("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise TokenMalformedError("token header is not valid JSON") from exc
        if not isinstance(header, dict):
            raise TokenMalformedError("token header must be an object")
        # Pin the algorithm to prevent alg confusion ("none", RS256 with HMAC key)
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenMalformedError("unsupported token algorithm")
        kid = header.get("kid")
        key = self.keyring.get(kid) if isinstance(kid, str) else None
        if key is None:
            raise TokenSignatureError("unknown signing key")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(_sign(key.secret, signing_input), sig_b64):
            raise TokenSignatureError()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise TokenMalformedError("token payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise TokenMalformedError("token payload must be an object")

        exp = _require_int(payload, "exp")
        if now.timestamp() > exp:
            raise TokenExpiredError()

        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise TokenMalformedError("not an access token")
        if payload.get("iss") != self.issuer:
            raise TokenMalformedError("unexpected issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenMalformedError("unexpected audience")
        version = _require_int(payload, "ver")
        if version != CLAIMS_VERSION:
            raise TokenMalformedError("unsupported claims version")
        epoch = _require_int(payload, "epoch")
        if epoch < 0:
            raise TokenMalformedError("claim 'epoch' must be non-negative")
        iat = _require_int(payload, "iat")
        return AccessClaims(
            subject=_require_str(payload, "sub"),
            session_id=_require_str(payload, "sid"),
            epoch=epoch,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            version=version,
        )


__all__ = [
    "CLAIMS_VERSION",
    "SigningKey",
    "KeyRing",
    "AccessClaims",
    "TokenCodec",
]
