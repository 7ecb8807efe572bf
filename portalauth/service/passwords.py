from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from typing import Optional

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import (
    HashingError,
    InvalidHashError,
    VerificationError,
    VerifyMismatchError,
)

from portalauth.logging import get_logger
from portalauth.service.errors import HashingUnavailableError

logger = get_logger(__name__)

# Current policy tag written alongside every new credential.
CURRENT_ALGO = "argon2id-v1"
# argon2 hashes from before tagging was versioned; parameters live in the hash.
LEGACY_ARGON2_ALGO = "argon2id"
# bcrypt (cost 12) hashes from the previous auth stack; verify-only.
LEGACY_BCRYPT_ALGO = "bcrypt"

ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST_KIB = 65536
ARGON2_PARALLELISM = 4
ARGON2_HASH_LEN = 32
ARGON2_SALT_LEN = 16


@dataclass(frozen=True)
class PasswordHash:
    digest: str
    algo: str


class PasswordPolicy:
    """The single hashing policy for stored credentials.

    Parameters are pinned here and nowhere else. Digests carry an algorithm
    tag so hashes minted under older schemes can still be verified while
    logins migrate them to ``CURRENT_ALGO``.
    """

    def __init__(self) -> None:
        self._hasher = PasswordHasher(
            time_cost=ARGON2_TIME_COST,
            memory_cost=ARGON2_MEMORY_COST_KIB,
            parallelism=ARGON2_PARALLELISM,
            hash_len=ARGON2_HASH_LEN,
            salt_len=ARGON2_SALT_LEN,
            type=Type.ID,
        )
        self._dummy_digest: Optional[str] = None
        self._dummy_lock = threading.Lock()

    def hash(self, plaintext: str) -> PasswordHash:
        try:
            digest = self._hasher.hash(plaintext)
        except (HashingError, MemoryError) as exc:
            logger.error("password_hashing_failed", error_type=type(exc).__name__)
            raise HashingUnavailableError("password hashing unavailable") from exc
        return PasswordHash(digest=digest, algo=CURRENT_ALGO)

    def verify(self, digest: str, plaintext: str, algo: str = CURRENT_ALGO) -> bool:
        if not digest:
            return False
        if algo in (CURRENT_ALGO, LEGACY_ARGON2_ALGO):
            return self._verify_argon2(digest, plaintext)
        if algo == LEGACY_BCRYPT_ALGO:
            return self._verify_bcrypt(digest, plaintext)
        logger.warning("password_algo_unsupported", algo=algo)
        return False

    def needs_rehash(self, digest: str, algo: str) -> bool:
        if algo != CURRENT_ALGO:
            return True
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHashError:
            return True

    def verify_dummy(self, plaintext: str) -> None:
        """Spend one full verification so unknown accounts are not faster."""
        with self._dummy_lock:
            if self._dummy_digest is None:
                self._dummy_digest = self.hash(secrets.token_urlsafe(16)).digest
            digest = self._dummy_digest
        self._verify_argon2(digest, plaintext)

    def _verify_argon2(self, digest: str, plaintext: str) -> bool:
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("password_hash_unreadable", error_type=type(exc).__name__)
            return False

    def _verify_bcrypt(self, digest: str, plaintext: str) -> bool:
        try:
            return bcrypt.checkpw(plaintext.encode("utf-8"), digest.encode("utf-8"))
        except ValueError:
            logger.warning("password_hash_unreadable", error_type="bcrypt_invalid_salt")
            return False
