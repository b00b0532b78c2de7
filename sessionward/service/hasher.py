from __future__ import annotations

import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from sessionward.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """Argon2id password hashing.

    Each hash carries its own random salt and cost parameters in the encoded
    string, so verification never needs side-channel metadata. Anything that
    goes wrong during verification counts as a mismatch.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost_kib: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost_kib,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Decoy hash with the live parameters so unknown-email logins pay
        # the same verification cost as real ones
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: str) -> bool:
        if not hashed:
            return False
        try:
            return self._pwd_hasher.verify(hashed, plaintext)
        except VerificationError:
            return False
        except InvalidHash:
            logger.warning("password_hash_malformed")
            return False

    def needs_rehash(self, hashed: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True

    def verify_dummy(self, plaintext: str) -> bool:
        self.verify(plaintext, self._dummy_hash)
        return False


__all__ = ["CredentialHasher"]
