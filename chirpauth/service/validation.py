"""Rule tables for auth and profile input.

Each input kind has a table of sanitizers (applied first) and a table of
``FieldRule`` entries checked against the sanitized values. A field that is
absent or ``None`` is only reported when one of its rules is ``required``;
every other rule for a present field runs and reports independently.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping

from chirpauth.service.errors import ValidationError
from chirpauth.service.sanitize import (
    MAX_BIO_LENGTH,
    MAX_DISPLAY_NAME_LENGTH,
    is_safe_location,
    is_safe_text,
    is_safe_username,
    is_valid_display_name,
    sanitize_email,
    sanitize_string,
    sanitize_text,
    sanitize_url,
    sanitize_username,
)

_USERNAME_CHARSET_RE = re.compile(r"^[A-Za-z0-9_]+$")


@dataclass(frozen=True)
class FieldRule:
    field: str
    check: Callable[[Any], bool]
    message: str
    required: bool = False


@dataclass(frozen=True)
class FieldFailure:
    field: str
    message: str

    def as_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}


def _text(predicate: Callable[[str], bool]) -> Callable[[Any], bool]:
    return lambda value: isinstance(value, str) and predicate(value)


def _unescaped(predicate: Callable[[str], bool]) -> Callable[[str], bool]:
    # html-escaped values are checked in their display form
    return lambda value: predicate(html.unescape(value))


def _trim(value: str) -> str:
    return value.strip()


SANITIZERS: Dict[str, Dict[str, Callable[[str], str]]] = {
    "sign_up": {
        "username": sanitize_username,
        "email": sanitize_email,
        "display_name": sanitize_string,
    },
    "sign_in": {
        "identifier": _trim,
    },
    "profile_update": {
        "display_name": sanitize_string,
        "bio": sanitize_text,
        "location": sanitize_string,
        "website_url": sanitize_url,
    },
}

RULES: Dict[str, List[FieldRule]] = {
    "sign_up": [
        FieldRule(
            "username",
            _text(lambda v: 3 <= len(v) <= 15),
            "Username must be between 3 and 15 characters",
            required=True,
        ),
        FieldRule(
            "username",
            _text(lambda v: bool(_USERNAME_CHARSET_RE.match(v))),
            "Username can only contain letters, numbers, and underscores",
        ),
        FieldRule(
            "username",
            _text(is_safe_username),
            "Username contains invalid characters or is not between 3-15 characters",
        ),
        FieldRule(
            "email",
            _text(bool),
            "Please provide a valid email address",
        ),
        FieldRule(
            "password",
            _text(lambda v: len(v) >= 8),
            "Password must be at least 8 characters long",
            required=True,
        ),
        FieldRule(
            "display_name",
            _text(_unescaped(is_valid_display_name)),
            f"Display name contains invalid characters or is too long (maximum {MAX_DISPLAY_NAME_LENGTH} characters)",
        ),
    ],
    "sign_in": [
        FieldRule(
            "identifier",
            _text(bool),
            "Email or username is required",
            required=True,
        ),
        FieldRule(
            "password",
            _text(bool),
            "Password is required",
            required=True,
        ),
        FieldRule(
            "remember_me",
            lambda v: isinstance(v, bool),
            "remember_me must be a boolean",
        ),
    ],
    "profile_update": [
        FieldRule(
            "display_name",
            _text(_unescaped(is_valid_display_name)),
            f"Display name contains invalid characters or is too long (maximum {MAX_DISPLAY_NAME_LENGTH} characters)",
        ),
        FieldRule(
            "bio",
            _text(lambda v: len(v) <= MAX_BIO_LENGTH),
            f"Bio cannot exceed {MAX_BIO_LENGTH} characters",
        ),
        FieldRule(
            "bio",
            _text(is_safe_text),
            "Text contains potentially unsafe content or is too long",
        ),
        FieldRule(
            "location",
            _text(_unescaped(is_safe_location)),
            "Location is too long (maximum 30 characters) or contains unsafe content",
        ),
        FieldRule(
            "website_url",
            _text(bool),
            "Please provide a valid URL with http or https protocol",
        ),
    ],
}


def _tables(kind: str):
    try:
        return SANITIZERS[kind], RULES[kind]
    except KeyError:
        raise ValueError(f"unknown input kind: {kind}") from None


def sanitize_input(kind: str, data: Mapping[str, Any]) -> Dict[str, Any]:
    """Apply the kind's sanitizers to string fields; other values pass through."""

    sanitizers, _ = _tables(kind)
    cleaned = dict(data)
    for field, sanitizer in sanitizers.items():
        value = cleaned.get(field)
        if isinstance(value, str):
            cleaned[field] = sanitizer(value)
    return cleaned


def _check_rules(rules: List[FieldRule], values: Mapping[str, Any]) -> List[FieldFailure]:
    failures: List[FieldFailure] = []
    missing_reported: set[str] = set()
    for rule in rules:
        value = values.get(rule.field)
        if value is None:
            if rule.required and rule.field not in missing_reported:
                failures.append(FieldFailure(rule.field, rule.message))
                missing_reported.add(rule.field)
            continue
        if not rule.check(value):
            failures.append(FieldFailure(rule.field, rule.message))
    return failures


def validate_input(kind: str, data: Mapping[str, Any]) -> List[FieldFailure]:
    _, rules = _tables(kind)
    return _check_rules(rules, sanitize_input(kind, data))


def require_valid(kind: str, data: Mapping[str, Any]) -> Dict[str, Any]:
    """Sanitize and validate ``data``; return the sanitized values.

    Raises ``ValidationError`` listing every failed rule.
    """

    _, rules = _tables(kind)
    cleaned = sanitize_input(kind, data)
    failures = _check_rules(rules, cleaned)
    if failures:
        raise ValidationError(errors=[failure.as_dict() for failure in failures])
    return cleaned


__all__ = [
    "FieldRule",
    "FieldFailure",
    "RULES",
    "SANITIZERS",
    "sanitize_input",
    "validate_input",
    "require_valid",
]
