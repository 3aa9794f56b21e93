from __future__ import annotations

import random
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import List, Optional

from chirpauth.storage.models import comparison_key

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 15
MAX_SUGGESTIONS = 5

_EMAIL_SHAPE_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
_USERNAME_BASE_STRIP_RE = re.compile(r"[^a-z0-9_]")


class CredentialKind(str, Enum):
    EMAIL = "email"
    USERNAME = "username"


@dataclass(frozen=True)
class NormalizedCredential:
    kind: CredentialKind
    normalized: str
    original: str


@dataclass(frozen=True)
class UsernameCheck:
    is_valid: bool
    reason: Optional[str] = None


def is_email_shape(value: str) -> bool:
    return bool(_EMAIL_SHAPE_RE.match(value))


def normalize(identifier: str) -> NormalizedCredential:
    """Classify a sign-in identifier as email or username.

    ``normalized`` is the comparison key; ``original`` keeps the trimmed input
    with its casing for audit logs.
    """

    trimmed = (identifier or "").strip()
    kind = CredentialKind.EMAIL if is_email_shape(trimmed) else CredentialKind.USERNAME
    return NormalizedCredential(kind=kind, normalized=trimmed.lower(), original=trimmed)


def validate_username_format(username: Optional[str]) -> UsernameCheck:
    trimmed = (username or "").strip()
    if len(trimmed) < USERNAME_MIN_LENGTH:
        return UsernameCheck(
            False, f"Username must be at least {USERNAME_MIN_LENGTH} characters long"
        )
    if len(trimmed) > USERNAME_MAX_LENGTH:
        return UsernameCheck(
            False, f"Username cannot exceed {USERNAME_MAX_LENGTH} characters"
        )
    if not _USERNAME_RE.match(trimmed):
        return UsernameCheck(
            False, "Username can only contain letters, numbers, and underscores"
        )
    return UsernameCheck(True)


def clean_username_base(value: Optional[str], max_length: Optional[int] = None) -> str:
    """Lowercase and reduce to the username charset, optionally truncated."""

    cleaned = _USERNAME_BASE_STRIP_RE.sub("", (value or "").lower())
    if max_length is not None:
        cleaned = cleaned[:max_length]
    return cleaned


def generate_username_suggestions(
    base: str,
    *,
    rng: Optional[random.Random] = None,
    today: Optional[date] = None,
) -> List[str]:
    """Alternatives offered when ``base`` is taken.

    ``{b}1``, ``{b}2``, ``{b}_{year}``, then either ``{b}_user`` and
    ``the_{b}`` or, for bases that already contain an underscore, ``{b}`` plus
    a random number. Availability is the caller's concern.
    """

    cleaned = clean_username_base(base)
    year = (today or date.today()).year
    suggestions = [f"{cleaned}1", f"{cleaned}2", f"{cleaned}_{year}"]
    if "_" not in cleaned:
        suggestions.extend([f"{cleaned}_user", f"the_{cleaned}"])
    else:
        suggestions.append(f"{cleaned}{(rng or random).randint(1, 999)}")
    return suggestions[:MAX_SUGGESTIONS]


__all__ = [
    "CredentialKind",
    "NormalizedCredential",
    "UsernameCheck",
    "comparison_key",
    "is_email_shape",
    "normalize",
    "validate_username_format",
    "clean_username_base",
    "generate_username_suggestions",
]
