from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sessionward.logging import get_logger
from sessionward.service.clock import Clock
from sessionward.service.errors import (
    AuthenticationRequiredError,
    TokenExpiredError,
    TokenMalformedError,
)
from sessionward.service.tokens import TokenCodec

logger = get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    subject_id: str
    session_id: str
    epoch: int


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AccessGuard:
    """Verifies access tokens on protected requests.

    Stateless by default: a valid signature and unexpired claims are enough,
    so a revoked session's access tokens keep working until they expire. In
    strict mode every request also checks the session record, which makes
    logout immediate at the cost of one store read per request.
    """

    def __init__(self, codec: TokenCodec, sessions, clock: Clock, *, strict: bool = False) -> None:
        self.codec = codec
        self.sessions = sessions
        self.clock = clock
        self.strict = strict

    def authenticate(self, authorization: Optional[str]) -> Principal:
        token = extract_bearer(authorization)
        if token is None:
            logger.info("access_denied", reason="missing_bearer")
            raise AuthenticationRequiredError()
        now = self.clock.now()
        try:
            claims = self.codec.verify(token, now)
        except TokenExpiredError:
            logger.info("access_denied", reason="token_expired")
            raise AuthenticationRequiredError()
        except TokenMalformedError as exc:
            logger.info(
                "access_denied",
                reason=type(exc).__name__,
                error=exc.message,
            )
            raise AuthenticationRequiredError()

        if self.strict:
            record = self.sessions.get_session(claims.session_id)
            denial = None
            if record is None or record.subject_id != claims.subject:
                denial = "session_missing"
            elif record.revoked:
                denial = "session_revoked"
            elif now > record.expires_at:
                denial = "session_expired"
            elif record.rotation_counter != claims.epoch:
                denial = "stale_epoch"
            if denial:
                logger.info(
                    "access_denied",
                    reason=denial,
                    session_id=claims.session_id,
                    user_id=claims.subject,
                )
                raise AuthenticationRequiredError()

        return Principal(
            subject_id=claims.subject, session_id=claims.session_id, epoch=claims.epoch
        )


__all__ = ["Principal", "extract_bearer", "AccessGuard"]
