from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from chirpauth.config import Settings
from chirpauth.logging import get_logger
from chirpauth.storage.models import Account, Session

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPayload:
    """Claims carried by a bearer token; only ``sid`` is trusted without a re-read."""

    sub: str
    username: str
    email: Optional[str]
    sid: Optional[str]
    iat: int
    exp: int
    token_type: str
    jti: str

    @property
    def session_ref(self) -> Optional[str]:
        return self.sid


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"


class TokenService:
    """HS256 bearer tokens scoped to the configured issuer and audience."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, now: Optional[datetime] = None) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Only HS256 is accepted, whatever the header claims
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        current = (now or self._now()).timestamp()
        if exp_ts <= current - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def _claims(
        self,
        account: Account,
        session: Optional[Session],
        token_type: str,
        issued_at: datetime,
        ttl: timedelta,
    ) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "username": account.username,
            "email": account.email,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + ttl).timestamp()),
        }
        if session is not None:
            claims["sid"] = session.id
        return claims

    def issue_tokens(
        self,
        account: Account,
        session: Optional[Session] = None,
        *,
        now: Optional[datetime] = None,
    ) -> TokenPair:
        issued_at = now or self._now()
        access_ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        access_token = self._encode_jwt(
            self._claims(account, session, ACCESS, issued_at, access_ttl)
        )
        refresh_token = self._encode_jwt(
            self._claims(account, session, REFRESH, issued_at, refresh_ttl)
        )
        logger.debug("tokens_issued", account_id=account.id, sid=session.id if session else None)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(access_ttl.total_seconds()),
            refresh_expires_in=int(refresh_ttl.total_seconds()),
        )

    def decode(
        self,
        token: str,
        expected_type: str = ACCESS,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[TokenPayload]:
        """Verify and parse ``token``; ``None`` for any invalid or expired token."""

        claims = self._decode_jwt(token, now=now)
        if not claims or claims.get("token_type") != expected_type:
            return None
        sub = claims.get("sub")
        if not isinstance(sub, str) or not sub:
            return None
        sid = claims.get("sid")
        return TokenPayload(
            sub=sub,
            username=str(claims.get("username") or ""),
            email=claims.get("email"),
            sid=sid if isinstance(sid, str) and sid else None,
            iat=int(claims.get("iat") or 0),
            exp=int(claims["exp"]),
            token_type=claims["token_type"],
            jti=str(claims.get("jti") or ""),
        )

    def refresh_access_token(
        self, refresh_token: str, *, now: Optional[datetime] = None
    ) -> Optional[tuple[str, int]]:
        """New access token from a valid refresh token, with its lifetime in seconds."""

        payload = self.decode(refresh_token, REFRESH, now=now)
        if payload is None:
            logger.warning("refresh_token_rejected")
            return None
        issued_at = now or self._now()
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        claims: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": payload.sub,
            "username": payload.username,
            "email": payload.email,
            "token_type": ACCESS,
            "jti": str(uuid.uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + ttl).timestamp()),
        }
        if payload.sid:
            claims["sid"] = payload.sid
        return self._encode_jwt(claims), int(ttl.total_seconds())


__all__ = ["ACCESS", "REFRESH", "TokenPair", "TokenPayload", "TokenService"]
