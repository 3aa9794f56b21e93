from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Protocol

from chirpauth.config import Settings
from chirpauth.logging import get_logger
from chirpauth.service.credentials import (
    CredentialKind,
    comparison_key,
    generate_username_suggestions,
    normalize,
    validate_username_format,
)
from chirpauth.service.errors import (
    AccountSuspended,
    EmailAlreadyExists,
    InvalidCredentials,
    InvalidToken,
    UsernameUnavailable,
    ValidationError,
)
from chirpauth.service.identity import IdentityResolver, IdentityStore
from chirpauth.service.oauth import GoogleOAuthClient
from chirpauth.service.passwords import PasswordHasher, validate_password_strength
from chirpauth.service.sanitize import sanitize_email
from chirpauth.service.sessions import SessionService
from chirpauth.service.tokens import REFRESH, TokenPair, TokenService
from chirpauth.service.validation import require_valid
from chirpauth.service.validator import TokenValidator, ValidatorStore
from chirpauth.storage.errors import ConstraintViolation
from chirpauth.storage.models import Account, Principal, Session

logger = get_logger(__name__)


class AuthStore(IdentityStore, ValidatorStore, Protocol):
    pass


@dataclass
class AuthResult:
    account: Account
    session: Session
    tokens: TokenPair


@dataclass(frozen=True)
class ClientInfo:
    """Request metadata recorded on the session row."""

    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_mobile: bool = False


class AuthService:
    """Sign-up, sign-in, OAuth callback and per-request authentication."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        oauth_client: GoogleOAuthClient,
        sessions: SessionService,
        tokens: TokenService,
        passwords: Optional[PasswordHasher] = None,
        resolver: Optional[IdentityResolver] = None,
        validator: Optional[TokenValidator] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.oauth_client = oauth_client
        self.sessions = sessions
        self.tokens = tokens
        self.passwords = passwords or PasswordHasher()
        self.resolver = resolver or IdentityResolver(
            store, max_username_attempts=settings.max_username_attempts
        )
        self.validator = validator or TokenValidator(
            store,
            sessions.refresh_session,
            extend_long_lived=settings.session_sliding_expiration,
        )
        self.logger = logger

    async def _start_session(
        self, account: Account, client: Optional[ClientInfo], remember_me: bool
    ) -> AuthResult:
        client = client or ClientInfo()
        session = await self.sessions.create_session(
            account,
            device_info=client.device_info,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            remember_me=remember_me,
            is_mobile=client.is_mobile,
        )
        return AuthResult(account, session, self.tokens.issue_tokens(account, session))

    async def _free_suggestions(self, username: str) -> List[str]:
        free: List[str] = []
        for candidate in generate_username_suggestions(username):
            if not validate_username_format(candidate).is_valid:
                continue
            taken = await asyncio.to_thread(
                self.store.find_account_by_username_key, comparison_key(candidate)
            )
            if taken is None:
                free.append(candidate)
        return free

    async def sign_up(
        self,
        username: str,
        password: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        *,
        client: Optional[ClientInfo] = None,
        remember_me: bool = False,
    ) -> AuthResult:
        data = {"username": username, "password": password}
        if email is not None:
            data["email"] = email
        if display_name is not None:
            data["display_name"] = display_name
        cleaned = require_valid("sign_up", data)
        problems = validate_password_strength(password)
        if problems:
            raise ValidationError(
                "Password does not meet strength requirements",
                errors=[{"field": "password", "message": p} for p in problems],
            )

        username = cleaned["username"]
        email = cleaned.get("email") or None
        if await asyncio.to_thread(
            self.store.find_account_by_username_key, comparison_key(username)
        ):
            raise UsernameUnavailable(username, await self._free_suggestions(username))
        if email and await asyncio.to_thread(
            self.store.find_account_by_email_key, comparison_key(email)
        ):
            raise EmailAlreadyExists()

        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        try:
            account = await asyncio.to_thread(
                lambda: self.store.create_account(
                    username,
                    email=email,
                    password_hash=password_hash,
                    display_name=cleaned.get("display_name") or username,
                )
            )
        except ConstraintViolation as exc:
            if exc.field == "email_key":
                raise EmailAlreadyExists() from exc
            raise UsernameUnavailable(
                username, await self._free_suggestions(username)
            ) from exc
        self.logger.info("account_signed_up", account_id=account.id)
        return await self._start_session(account, client, remember_me)

    async def sign_in(
        self,
        identifier: str,
        password: str,
        *,
        remember_me: bool = False,
        client: Optional[ClientInfo] = None,
    ) -> AuthResult:
        """Password sign-in by email or username.

        Unknown identifiers, password-less accounts and wrong passwords all
        raise the same ``InvalidCredentials``.
        """

        cleaned = require_valid(
            "sign_in",
            {"identifier": identifier, "password": password, "remember_me": remember_me},
        )
        credential = normalize(cleaned["identifier"])
        if credential.kind is CredentialKind.EMAIL:
            key = comparison_key(sanitize_email(credential.original) or credential.normalized)
            account = await asyncio.to_thread(self.store.find_account_by_email_key, key)
        else:
            account = await asyncio.to_thread(
                self.store.find_account_by_username_key, credential.normalized
            )

        if account is None or not account.password_hash:
            self.logger.info("sign_in_rejected", kind=credential.kind.value)
            raise InvalidCredentials()
        verified = await asyncio.to_thread(
            self.passwords.verify, account.password_hash, password
        )
        if not verified:
            self.logger.info("sign_in_rejected", kind=credential.kind.value)
            raise InvalidCredentials()
        if account.is_suspended:
            raise AccountSuspended(account.suspension_reason)
        self.logger.info("account_signed_in", account_id=account.id)
        return await self._start_session(account, client, remember_me)

    def oauth_authorization_url(self, state: Optional[str] = None) -> str:
        return self.oauth_client.build_authorization_url(state)

    async def complete_oauth(
        self,
        code: str,
        *,
        client: Optional[ClientInfo] = None,
        remember_me: bool = False,
    ) -> AuthResult:
        if not code or not code.strip():
            raise ValidationError(
                "Authorization code is required",
                errors=[{"field": "code", "message": "Authorization code is required"}],
            )
        provider_tokens = await self.oauth_client.exchange_code(code.strip())
        profile = await self.oauth_client.fetch_profile(provider_tokens.access_token)
        account = await self.resolver.resolve(profile)
        if account.is_suspended:
            raise AccountSuspended(account.suspension_reason)
        self.logger.info(
            "oauth_signed_in", provider=profile.provider, account_id=account.id
        )
        return await self._start_session(account, client, remember_me)

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization_header: Optional[str]) -> Principal:
        token = self._extract_bearer(authorization_header)
        payload = self.tokens.decode(token) if token else None
        if payload is None:
            raise InvalidToken()
        return await self.validator.validate(payload)

    async def refresh_tokens(self, refresh_token: str) -> tuple[str, int]:
        """New access token for a refresh token whose subject is still valid."""

        payload = self.tokens.decode(refresh_token, REFRESH)
        if payload is None:
            raise InvalidToken(REFRESH)
        await self.validator.validate(payload)
        refreshed = self.tokens.refresh_access_token(refresh_token)
        if refreshed is None:
            raise InvalidToken(REFRESH)
        return refreshed

    async def sign_out(self, session_ref: str) -> bool:
        session = await self.sessions.get_session(session_ref)
        if session is None:
            return False
        return await self.sessions.invalidate_session(session.session_token)

    async def sign_out_everywhere(self, account_id: str) -> int:
        return await self.sessions.invalidate_all_account_sessions(account_id)


__all__ = ["AuthResult", "AuthService", "AuthStore", "ClientInfo"]
