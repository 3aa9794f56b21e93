from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def comparison_key(value: str) -> str:
    """Lowercase-trim form used for case-insensitive uniqueness."""
    return value.strip().lower()


@dataclass
class Account:
    id: str
    username: str
    username_key: str
    display_name: str = ""
    email: Optional[str] = None
    email_key: Optional[str] = None
    password_hash: Optional[str] = None
    email_verified: bool = False
    is_verified: bool = False
    is_suspended: bool = False
    suspension_reason: Optional[str] = None
    follower_count: int = 0
    following_count: int = 0
    post_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        *,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        display_name: Optional[str] = None,
        email_verified: bool = False,
    ) -> "Account":
        username = username.strip()
        email = email.strip() if email and email.strip() else None
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            username_key=comparison_key(username),
            display_name=display_name or username,
            email=email,
            email_key=comparison_key(email) if email else None,
            password_hash=password_hash,
            email_verified=email_verified,
        )


@dataclass
class ExternalIdentityLink:
    id: str
    account_id: str
    provider: str
    provider_account_id: str
    email: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        account_id: str,
        provider: str,
        provider_account_id: str,
        email: Optional[str] = None,
    ) -> "ExternalIdentityLink":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            provider=provider,
            provider_account_id=provider_account_id,
            email=email or None,
        )


@dataclass(frozen=True)
class NewExternalLink:
    """Provider identity to link in the same write that creates an account."""

    provider: str
    provider_account_id: str
    email: Optional[str] = None


@dataclass
class Session:
    id: str
    account_id: str
    session_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        ttl: timedelta,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            session_token=secrets.token_urlsafe(48),
            expires_at=now + ttl,
            created_at=now,
            last_used_at=now,
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at < now


@dataclass
class Principal:
    """Minimal identity handed to request handlers after validation."""

    account_id: str
    username: str
    email: Optional[str]
    display_name: str
    is_verified: bool
    email_verified: bool
    session_ref: Optional[str] = None
