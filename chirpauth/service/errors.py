from __future__ import annotations

from typing import Iterable, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class carries an HTTP-ish ``status_code`` and a stable
    ``error_code`` so the web layer can translate it without inspecting the
    message. ``retryable`` tells callers whether backing off and trying again
    can succeed:
    - unauthorized (401)
    - validation_error (400)
    - conflict (409)
    - upstream_unavailable (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed identifier, username, email or other input (400).

    ``detail["errors"]`` holds field-level failures as
    ``{"field": ..., "message": ...}`` dicts.
    """

    status_code = 400
    error_code = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        *,
        errors: Optional[Iterable[dict]] = None,
        **kwargs,
    ) -> None:
        errors = list(errors or [])
        detail = dict(kwargs.pop("detail", None) or {})
        if errors:
            detail["errors"] = errors
        super().__init__(message, detail=detail, **kwargs)
        self.errors = errors


class ConfigurationError(ServiceError):
    """Required provider credentials or URLs are missing (500, not retried)."""

    status_code = 500
    error_code = "configuration_error"

    def __init__(self, provider: str, missing: Optional[Iterable[str]] = None) -> None:
        missing = sorted(missing or [])
        super().__init__(
            f"OAuth configuration for {provider} is missing or invalid",
            detail={"provider": provider, "missing": missing},
        )
        self.provider = provider
        self.missing = missing


class UpstreamUnavailable(ServiceError):
    """Token exchange or profile fetch failed; safe to retry with backoff (503).

    The message is fixed: upstream response bodies never reach the caller.
    """

    status_code = 503
    error_code = "upstream_unavailable"
    retryable = True

    def __init__(
        self, provider: str, operation: str, *, upstream_status: Optional[int] = None
    ) -> None:
        super().__init__(
            "Sign-in provider is temporarily unavailable, please try again",
            detail={"provider": provider, "operation": operation},
        )
        self.provider = provider
        self.operation = operation
        self.upstream_status = upstream_status


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""

    status_code = 401
    error_code = "unauthorized"


class UserNotFound(AuthenticationError):
    """Token subject no longer maps to an account."""

    def __init__(self) -> None:
        super().__init__("User not found", error_code="user_not_found")


class AccountSuspended(AuthenticationError):
    """Account is suspended; carries the stored reason when there is one."""

    def __init__(self, reason: Optional[str] = None) -> None:
        message = f"Account suspended: {reason}" if reason else "Account suspended"
        super().__init__(
            message,
            error_code="account_suspended",
            detail={"reason": reason} if reason else None,
        )
        self.reason = reason


class SessionInvalid(AuthenticationError):
    """Referenced session is absent or expired; the two are indistinguishable."""

    def __init__(self) -> None:
        super().__init__("Session expired or invalid", error_code="session_invalid")


class InvalidCredentials(AuthenticationError):
    """Unknown identifier or wrong password; the two are indistinguishable."""

    def __init__(self) -> None:
        super().__init__("Invalid credentials", error_code="invalid_credentials")


class InvalidToken(AuthenticationError):
    """Bearer token is missing, malformed, badly signed or expired."""

    def __init__(self, token_type: str = "access") -> None:
        super().__init__(
            f"Invalid or expired {token_type} token",
            error_code="invalid_token",
            detail={"token_type": token_type},
        )
        self.token_type = token_type


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate creation (409)."""

    status_code = 409
    error_code = "conflict"


class UsernameUnavailable(ConflictError):
    """Username is taken or no free variant was found."""

    def __init__(self, username: str, suggestions: Optional[Iterable[str]] = None) -> None:
        suggestions = list(suggestions or [])
        super().__init__(
            f"Username '{username}' is not available",
            error_code="username_unavailable",
            detail={"username": username, "suggestions": suggestions},
        )
        self.username = username
        self.suggestions = suggestions


class EmailAlreadyExists(ConflictError):
    """An account already uses this email comparison key."""

    def __init__(self) -> None:
        super().__init__(
            "An account with this email already exists",
            error_code="email_already_exists",
            detail={"suggestion": "Try signing in instead"},
        )


class StorageConflict(ConflictError):
    """A concurrent writer won the race twice in a row."""

    def __init__(self, operation: str, field: Optional[str] = None) -> None:
        super().__init__(
            "Request conflicted with a concurrent update, please try again",
            error_code="storage_conflict",
            detail={"operation": operation, "field": field},
        )
        self.operation = operation
        self.field = field


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConfigurationError",
    "UpstreamUnavailable",
    "AuthenticationError",
    "UserNotFound",
    "AccountSuspended",
    "SessionInvalid",
    "InvalidCredentials",
    "InvalidToken",
    "ConflictError",
    "UsernameUnavailable",
    "EmailAlreadyExists",
    "StorageConflict",
]
