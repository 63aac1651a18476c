from __future__ import annotations

from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from qcauth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordManager:
    """Slow salted hashing (argon2id) for stored credentials."""

    def __init__(self, store, *, min_length: int = 8) -> None:
        self.store = store
        self.min_length = min_length
        self._hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        digest, algo = self.hash(password)
        self.store.save_password(user_id, digest, algo)

    def has_password(self, user_id: str) -> bool:
        return self.store.get_password_record(user_id) is not None

    def _burn_time(self, password: str) -> None:
        # keep unknown-user lookups as slow as a real comparison
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash("qcauth-timing-equalizer")
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def verify(self, user_id: Optional[str], password: str) -> bool:
        record = self.store.get_password_record(user_id) if user_id else None
        if not record:
            self._burn_time(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    def needs_rehash(self, user_id: str) -> bool:
        record = self.store.get_password_record(user_id)
        return bool(record) and self._hasher.check_needs_rehash(record[0])
