"""Input sanitizers applied at the edge of every auth flow.

All functions are total (bad input yields ``""`` or ``False``, never an
exception) and idempotent: running a sanitizer on its own output returns the
same string. Storage access is parametrised regardless; the SQL signal here
only flags suspicious input.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Optional
from urllib.parse import urlsplit

from email_validator import EmailNotValidError, validate_email

# An ``&`` that already starts an entity is left alone so escaping is idempotent
_ENTITY_RE = re.compile(r"&(?!(?:#[0-9]+|#[xX][0-9a-fA-F]+|[A-Za-z][A-Za-z0-9]*);)")
_HTML_ESCAPES = {
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
}
_HTML_ESCAPE_RE = re.compile(r"[<>\"'/]")

_USERNAME_STRIP_RE = re.compile(r"[^A-Za-z0-9_]")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_FILENAME_STRIP_RE = re.compile(r"[^A-Za-z0-9._-]")
_DISPLAY_NAME_RE = re.compile(r"^[A-Za-z0-9\s\-_.,'!?()]+$")
_DOMAIN_LABEL_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")
_TLD_RE = re.compile(r"^(?:[A-Za-z]{2,63}|xn--[A-Za-z0-9-]{1,59})$")

_SQL_SIGNAL_PATTERNS = [
    re.compile(r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|UNION)\b", re.I),
    re.compile(r"(--|/\*|\*/|;)"),
    re.compile(r"\b(OR|AND)\b.*=.*", re.I),
    re.compile(r"'.*'"),
]

# Domains that deliver to the same mailbox as a canonical one
_GMAIL_DOMAINS = {"gmail.com", "googlemail.com"}
_YANDEX_DOMAINS = {
    "yandex.ru",
    "yandex.ua",
    "yandex.kz",
    "yandex.com",
    "yandex.by",
    "ya.ru",
}

MAX_FILENAME_LENGTH = 255
MAX_DISPLAY_NAME_LENGTH = 50
MAX_BIO_LENGTH = 160
MAX_SAFE_TEXT_LENGTH = 1000
MAX_LOCATION_LENGTH = 30


def sanitize_string(value: Optional[str]) -> str:
    """Trim and HTML-escape ``& < > " ' /``."""

    if not value:
        return ""
    escaped = _ENTITY_RE.sub("&amp;", value.strip())
    return _HTML_ESCAPE_RE.sub(lambda m: _HTML_ESCAPES[m.group(0)], escaped)


def _canonical_domain(domain: str) -> str:
    if domain in _GMAIL_DOMAINS:
        return "gmail.com"
    if domain in _YANDEX_DOMAINS:
        return "yandex.ru"
    return domain


def sanitize_email(value: Optional[str]) -> str:
    """Return the canonical lowercase form of an email address, or ``""``.

    Dots and ``+tag`` sub-addresses are kept; only the provider domain is
    canonicalised (``googlemail.com`` -> ``gmail.com``, Yandex aliases ->
    ``yandex.ru``).
    """

    if not value:
        return ""
    candidate = value.strip().lower()
    if not candidate or any(ch.isspace() for ch in candidate):
        return ""
    try:
        result = validate_email(candidate, check_deliverability=False)
    except EmailNotValidError:
        return ""
    local, _, domain = result.normalized.lower().rpartition("@")
    if not local or not domain:
        return ""
    return f"{local}@{_canonical_domain(domain)}"


def sanitize_username(value: Optional[str]) -> str:
    if not value:
        return ""
    return _USERNAME_STRIP_RE.sub("", value.strip())


def _is_valid_host(host: str) -> bool:
    if not host:
        return False
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        pass
    labels = host.rstrip(".").split(".")
    if len(labels) < 2:
        return False
    if not all(_DOMAIN_LABEL_RE.match(label) for label in labels):
        return False
    return bool(_TLD_RE.match(labels[-1]))


def sanitize_url(value: Optional[str]) -> str:
    """Return ``value`` trimmed if it is an absolute http(s) URL, else ``""``."""

    if not value:
        return ""
    trimmed = value.strip()
    if not trimmed or any(ch.isspace() for ch in trimmed):
        return ""
    try:
        parts = urlsplit(trimmed)
    except ValueError:
        return ""
    if parts.scheme.lower() not in {"http", "https"}:
        return ""
    if not _is_valid_host(parts.hostname or ""):
        return ""
    return trimmed


def sanitize_text(value: Optional[str]) -> str:
    """Strip control characters other than tab/newline/CR, then trim."""

    if not value:
        return ""
    return _CONTROL_CHARS_RE.sub("", value).strip()


def sanitize_filename(value: Optional[str]) -> str:
    if not value:
        return ""
    cleaned = _FILENAME_STRIP_RE.sub("_", value).lstrip(".")
    return cleaned[:MAX_FILENAME_LENGTH]


def contains_sql_injection_signal(value: Optional[str]) -> bool:
    if not value:
        return False
    return any(pattern.search(value) for pattern in _SQL_SIGNAL_PATTERNS)


def is_valid_ip_address(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def is_valid_display_name(value: Optional[str]) -> bool:
    if not value:
        return True
    return (
        len(value) <= MAX_DISPLAY_NAME_LENGTH
        and _DISPLAY_NAME_RE.match(value) is not None
    )


def is_valid_bio(value: Optional[str]) -> bool:
    if not value:
        return True
    return len(value) <= MAX_BIO_LENGTH


def is_safe_username(value: Optional[str]) -> bool:
    """True when the username carries no SQL signal and needs no sanitizing."""

    if value is None:
        return True
    if contains_sql_injection_signal(value):
        return False
    return sanitize_username(value) == value and 3 <= len(value) <= 15


def is_safe_text(value: Optional[str]) -> bool:
    if value is None:
        return True
    return not contains_sql_injection_signal(value) and len(value) <= MAX_SAFE_TEXT_LENGTH


def is_safe_location(value: Optional[str]) -> bool:
    if value is None:
        return True
    return not contains_sql_injection_signal(value) and len(value) <= MAX_LOCATION_LENGTH


def rate_limit_key(prefix: str, identifier: str) -> str:
    return f"{prefix}:{identifier}"


__all__ = [
    "sanitize_string",
    "sanitize_email",
    "sanitize_username",
    "sanitize_url",
    "sanitize_text",
    "sanitize_filename",
    "contains_sql_injection_signal",
    "is_valid_ip_address",
    "is_valid_display_name",
    "is_valid_bio",
    "is_safe_username",
    "is_safe_text",
    "is_safe_location",
    "rate_limit_key",
]
