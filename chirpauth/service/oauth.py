from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional
from urllib.parse import urlencode

import httpx

from chirpauth.config import Settings
from chirpauth.logging import get_logger, sanitize_error_message
from chirpauth.service.errors import ConfigurationError, UpstreamUnavailable

logger = get_logger(__name__)

GOOGLE_PROVIDER = "google"
GOOGLE_ENDPOINTS = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "tokeninfo_url": "https://www.googleapis.com/oauth2/v1/tokeninfo",
    "scope": "openid email profile",
}


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 0
    token_type: str = "Bearer"


@dataclass(frozen=True)
class ProviderProfile:
    """Identity asserted by an OAuth provider; optional fields are ``""``."""

    provider: str
    provider_account_id: str
    email: str = ""
    email_verified: bool = False
    display_name: str = ""
    given_name: str = ""
    family_name: str = ""
    picture: str = ""
    locale: str = "en"


def _str_field(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    return str(value)


def profile_from_google_userinfo(data: Mapping[str, Any]) -> ProviderProfile:
    """Map a Google ``userinfo`` response body to a ``ProviderProfile``."""

    return ProviderProfile(
        provider=GOOGLE_PROVIDER,
        provider_account_id=_str_field(data, "id") or _str_field(data, "sub"),
        email=_str_field(data, "email"),
        email_verified=bool(data.get("verified_email") or data.get("email_verified")),
        display_name=_str_field(data, "name"),
        given_name=_str_field(data, "given_name"),
        family_name=_str_field(data, "family_name"),
        picture=_str_field(data, "picture"),
        locale=_str_field(data, "locale") or "en",
    )


def profile_from_passport(
    profile: Mapping[str, Any], provider: str = GOOGLE_PROVIDER
) -> ProviderProfile:
    """Map a passport-style profile (``emails``/``photos`` lists, nested ``name``)."""

    emails = profile.get("emails") or []
    first_email = emails[0] if emails and isinstance(emails[0], Mapping) else {}
    photos = profile.get("photos") or []
    first_photo = photos[0] if photos and isinstance(photos[0], Mapping) else {}
    name = profile.get("name") if isinstance(profile.get("name"), Mapping) else {}
    raw = profile.get("_json") if isinstance(profile.get("_json"), Mapping) else {}
    return ProviderProfile(
        provider=provider,
        provider_account_id=_str_field(profile, "id"),
        email=_str_field(first_email, "value"),
        email_verified=bool(first_email.get("verified", False)),
        display_name=_str_field(profile, "displayName"),
        given_name=_str_field(name, "givenName"),
        family_name=_str_field(name, "familyName"),
        picture=_str_field(first_photo, "value"),
        locale=_str_field(raw, "locale") or "en",
    )


class GoogleOAuthClient:
    """Google OAuth 2.0 code exchange and profile fetch over ``httpx``.

    Non-2xx responses, transport errors and unparsable bodies raise
    ``UpstreamUnavailable``. Upstream response text is logged in scrubbed
    form and never attached to the raised error.
    """

    provider = GOOGLE_PROVIDER

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self.logger = logger

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.oauth_http_timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        )

    def _require_config(self, *, need_secret: bool) -> tuple[str, Optional[str], str]:
        client_id = self.settings.google_client_id
        client_secret = self.settings.google_client_secret
        redirect_uri = self.settings.google_callback_url
        missing = []
        if not client_id:
            missing.append("GOOGLE_CLIENT_ID")
        if need_secret and not client_secret:
            missing.append("GOOGLE_CLIENT_SECRET")
        if not redirect_uri:
            missing.append("GOOGLE_CALLBACK_URL")
        if missing:
            self.logger.error("oauth_config_missing", provider=self.provider, missing=missing)
            raise ConfigurationError(self.provider, missing)
        return client_id, client_secret, redirect_uri

    def build_authorization_url(self, state: Optional[str] = None) -> str:
        client_id, _, redirect_uri = self._require_config(need_secret=True)
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_ENDPOINTS["scope"],
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{GOOGLE_ENDPOINTS['auth_url']}?{urlencode(params)}"

    def _upstream_failure(
        self, operation: str, response: Optional[httpx.Response] = None, error: Any = None
    ) -> UpstreamUnavailable:
        status = response.status_code if response is not None else None
        body = ""
        if response is not None:
            try:
                body = sanitize_error_message(response.text[:500])
            except (UnicodeDecodeError, httpx.HTTPError):
                body = ""
        self.logger.error(
            f"oauth_{operation}_failed",
            provider=self.provider,
            status_code=status,
            upstream_body=body or None,
            error=sanitize_error_message(str(error)) if error is not None else None,
        )
        return UpstreamUnavailable(self.provider, operation, upstream_status=status)

    async def exchange_code(self, code: str) -> OAuthTokens:
        client_id, client_secret, redirect_uri = self._require_config(need_secret=True)
        form = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    GOOGLE_ENDPOINTS["token_url"],
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise self._upstream_failure("token_exchange", error=exc) from exc
        if not response.is_success:
            raise self._upstream_failure("token_exchange", response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise self._upstream_failure("token_exchange", response, exc) from exc
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise self._upstream_failure("token_exchange", response, "access_token missing")
        try:
            expires_in = int(payload.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        return OAuthTokens(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=expires_in,
            token_type=payload.get("token_type") or "Bearer",
        )

    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        try:
            async with self._client() as client:
                response = await client.get(
                    GOOGLE_ENDPOINTS["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as exc:
            raise self._upstream_failure("profile_fetch", error=exc) from exc
        if not response.is_success:
            raise self._upstream_failure("profile_fetch", response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise self._upstream_failure("profile_fetch", response, exc) from exc
        if not isinstance(payload, dict):
            raise self._upstream_failure("profile_fetch", response, "unexpected body shape")
        return profile_from_google_userinfo(payload)

    async def validate_access_token(self, access_token: str) -> bool:
        """True when Google reports the token was issued to this client."""

        client_id = self.settings.google_client_id
        if not client_id or not access_token:
            return False
        try:
            async with self._client() as client:
                response = await client.get(
                    GOOGLE_ENDPOINTS["tokeninfo_url"],
                    params={"access_token": access_token},
                )
            if not response.is_success:
                return False
            info = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.warning(
                "oauth_token_validation_failed",
                provider=self.provider,
                error=sanitize_error_message(str(exc)),
            )
            return False
        return isinstance(info, dict) and info.get("audience") == client_id


__all__ = [
    "GOOGLE_PROVIDER",
    "GoogleOAuthClient",
    "OAuthTokens",
    "ProviderProfile",
    "profile_from_google_userinfo",
    "profile_from_passport",
]
