from __future__ import annotations

import re
from typing import List, Optional

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from chirpauth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128

_SPECIAL_CHAR_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


class PasswordHasher:
    """argon2id hashing for local password credentials."""

    algorithm = "argon2id"

    def __init__(self, hasher: Optional[Argon2Hasher] = None) -> None:
        self._hasher = hasher or Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: Optional[str], password: str) -> bool:
        """True only for a matching password; mismatches and bad hashes are False."""

        if not password_hash or not password:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True


def validate_password_strength(password: Optional[str]) -> List[str]:
    """Return the strength rules ``password`` breaks; empty means acceptable."""

    password = password or ""
    problems: List[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        problems.append(
            f"Password must be at least {PASSWORD_MIN_LENGTH} characters long"
        )
    if len(password) > PASSWORD_MAX_LENGTH:
        problems.append(f"Password must not exceed {PASSWORD_MAX_LENGTH} characters")
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        problems.append("Password must contain at least one number")
    if not _SPECIAL_CHAR_RE.search(password):
        problems.append("Password must contain at least one special character")
    return problems


__all__ = ["PasswordHasher", "validate_password_strength"]
