"""Map an external provider identity onto exactly one local account.

Resolution order is fixed: provider link, then account by email key, then a
new account created together with its link. Uniqueness is enforced by the
store; a lost race surfaces as ``ConstraintViolation`` and the whole
resolution is retried once against the state the winner left behind.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Optional, Protocol

from chirpauth.logging import get_logger
from chirpauth.service.credentials import (
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
    clean_username_base,
    comparison_key,
    generate_username_suggestions,
)
from chirpauth.service.errors import StorageConflict, UsernameUnavailable, ValidationError
from chirpauth.service.oauth import ProviderProfile
from chirpauth.service.sanitize import (
    MAX_DISPLAY_NAME_LENGTH,
    sanitize_email,
    sanitize_string,
)
from chirpauth.storage.errors import ConstraintViolation
from chirpauth.storage.models import Account, ExternalIdentityLink, NewExternalLink

logger = get_logger(__name__)

# Leaves room for numeric suffixes within USERNAME_MAX_LENGTH
USERNAME_BASE_LENGTH = 12
_FALLBACK_USERNAME = "user"
_SHORT_USERNAME_PAD = "_user"


class IdentityStore(Protocol):
    def find_account_by_id(self, account_id: str) -> Optional[Account]: ...

    def find_account_by_email_key(self, email_key: str) -> Optional[Account]: ...

    def find_account_by_username_key(self, username_key: str) -> Optional[Account]: ...

    def create_account(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        display_name: Optional[str] = None,
        email_verified: bool = False,
        external_link: Optional[NewExternalLink] = None,
    ) -> Account: ...

    def find_external_link(
        self, provider: str, provider_account_id: str
    ) -> Optional[ExternalIdentityLink]: ...

    def create_external_link(
        self,
        account_id: str,
        provider: str,
        provider_account_id: str,
        email: Optional[str] = None,
    ) -> ExternalIdentityLink: ...

    def update_external_link_email(
        self, link_id: str, email: Optional[str]
    ) -> Optional[ExternalIdentityLink]: ...


def derive_username_base(profile: ProviderProfile) -> str:
    """Username stem from the email local part, else the display name."""

    source = profile.email.split("@", 1)[0] if profile.email else profile.display_name
    base = clean_username_base(source, max_length=USERNAME_BASE_LENGTH)
    if not base:
        return _FALLBACK_USERNAME
    if len(base) < USERNAME_MIN_LENGTH:
        base = f"{base}{_SHORT_USERNAME_PAD}"[:USERNAME_BASE_LENGTH]
    return base


def fit_display_name(raw: str, limit: int = MAX_DISPLAY_NAME_LENGTH) -> str:
    """HTML-escaped display name no longer than ``limit`` characters."""

    text = (raw or "").strip()[:limit]
    escaped = sanitize_string(text)
    while len(escaped) > limit and text:
        text = text[:-1]
        escaped = sanitize_string(text)
    return escaped


class IdentityResolver:
    def __init__(
        self, store: IdentityStore, *, max_username_attempts: Optional[int] = None
    ) -> None:
        self.store = store
        self.max_username_attempts = max_username_attempts
        self.logger = logger

    async def resolve(self, profile: ProviderProfile) -> Account:
        if not profile.provider or not (profile.provider_account_id or "").strip():
            raise ValidationError(
                "Provider profile is missing its account id",
                errors=[
                    {
                        "field": "provider_account_id",
                        "message": "Provider account id is required",
                    }
                ],
            )
        try:
            return await self._resolve_once(profile)
        except ConstraintViolation as exc:
            self.logger.info(
                "identity_resolve_conflict_retry",
                provider=profile.provider,
                field=exc.field,
            )
        try:
            return await self._resolve_once(profile)
        except ConstraintViolation as exc:
            self.logger.warning(
                "identity_resolve_conflict",
                provider=profile.provider,
                field=exc.field,
            )
            raise StorageConflict("resolve_identity", exc.field) from exc

    async def _resolve_once(self, profile: ProviderProfile) -> Account:
        provider = profile.provider
        provider_account_id = profile.provider_account_id.strip()
        link_email = profile.email.strip() or None

        link = await asyncio.to_thread(
            self.store.find_external_link, provider, provider_account_id
        )
        if link is not None:
            return await self._linked_account(link, link_email)

        email = sanitize_email(profile.email)
        if email:
            existing = await asyncio.to_thread(
                self.store.find_account_by_email_key, comparison_key(email)
            )
            if existing is not None:
                await asyncio.to_thread(
                    self.store.create_external_link,
                    existing.id,
                    provider,
                    provider_account_id,
                    link_email,
                )
                self.logger.info(
                    "identity_link_created", provider=provider, account_id=existing.id
                )
                return existing

        username = await self._available_username(derive_username_base(profile))
        account = await asyncio.to_thread(
            lambda: self.store.create_account(
                username,
                email=email or None,
                display_name=fit_display_name(profile.display_name) or username,
                email_verified=profile.email_verified,
                external_link=NewExternalLink(provider, provider_account_id, link_email),
            )
        )
        self.logger.info(
            "identity_account_created",
            provider=provider,
            account_id=account.id,
            username=account.username,
        )
        return account

    async def _linked_account(
        self, link: ExternalIdentityLink, link_email: Optional[str]
    ) -> Account:
        if (link.email or None) != link_email:
            await asyncio.to_thread(
                self.store.update_external_link_email, link.id, link_email
            )
            self.logger.info("identity_link_email_updated", link_id=link.id)
        account = await asyncio.to_thread(self.store.find_account_by_id, link.account_id)
        if account is None:
            raise ConstraintViolation("linked account missing", {"field": "account_id"})
        return account

    async def _username_taken(self, candidate: str) -> bool:
        found = await asyncio.to_thread(
            self.store.find_account_by_username_key, comparison_key(candidate)
        )
        return found is not None

    async def _available_username(self, base: str) -> str:
        if not await self._username_taken(base):
            return base
        if self.max_username_attempts is None:
            counter = itertools.count(1)
        else:
            counter = iter(range(1, self.max_username_attempts + 1))
        for attempt in counter:
            suffix = str(attempt)
            if len(suffix) >= USERNAME_MAX_LENGTH:
                break
            candidate = f"{base[: USERNAME_MAX_LENGTH - len(suffix)]}{suffix}"
            if not await self._username_taken(candidate):
                return candidate
        self.logger.warning("identity_username_exhausted", base=base)
        raise UsernameUnavailable(base, generate_username_suggestions(base))


__all__ = [
    "IdentityResolver",
    "IdentityStore",
    "derive_username_base",
    "fit_display_name",
]
