from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from redis.exceptions import RedisError

from chirpauth.config import Settings
from chirpauth.logging import get_logger
from chirpauth.storage.models import Account, Session
from chirpauth.storage.redis_cache import RedisSessionCache

logger = get_logger(__name__)

MOBILE_KEYWORDS = (
    "mobile",
    "android",
    "iphone",
    "ipad",
    "ipod",
    "blackberry",
    "windows phone",
    "opera mini",
)
# Sessions created for longer than this are treated as remember-me sessions
LONG_SESSION_THRESHOLD = timedelta(days=45)


class SessionStore(Protocol):
    def find_account_by_id(self, account_id: str) -> Optional[Account]: ...

    def create_session(
        self,
        account_id: str,
        ttl: timedelta,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session: ...

    def find_session_by_id(self, session_id: str) -> Optional[Session]: ...

    def find_session_by_token(self, session_token: str) -> Optional[Session]: ...

    def touch_session(
        self,
        session_token: str,
        *,
        last_used_at: datetime,
        expires_at: Optional[datetime] = None,
    ) -> Optional[Session]: ...

    def delete_session(self, session_token: str) -> bool: ...

    def delete_account_sessions(self, account_id: str) -> List[Session]: ...

    def list_account_sessions(
        self, account_id: str, *, now: Optional[datetime] = None
    ) -> List[Session]: ...

    def delete_expired_sessions(self, *, now: Optional[datetime] = None) -> int: ...


def is_mobile_device(user_agent: Optional[str], device_info: Optional[str]) -> bool:
    if not user_agent and not device_info:
        return False
    haystack = f"{user_agent or ''} {device_info or ''}".lower()
    return any(keyword in haystack for keyword in MOBILE_KEYWORDS)


def is_long_session(session: Session) -> bool:
    return session.expires_at - session.created_at > LONG_SESSION_THRESHOLD


class SessionService:
    """Server-side session lifecycle with an optional Redis mirror.

    The database row is authoritative. Cache writes are best effort: a Redis
    failure is logged and never fails the session operation.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        cache: Optional[RedisSessionCache] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.logger = logger

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def session_ttl(self, *, is_mobile: bool = False, remember_me: bool = False) -> timedelta:
        if is_mobile or remember_me:
            return timedelta(days=self.settings.mobile_session_timeout_days)
        return timedelta(days=self.settings.web_session_timeout_days)

    async def create_session(
        self,
        account: Account,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
        is_mobile: bool = False,
    ) -> Session:
        ttl = self.session_ttl(is_mobile=is_mobile, remember_me=remember_me)
        session = await asyncio.to_thread(
            lambda: self.store.create_session(
                account.id,
                ttl,
                device_info=device_info,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        if self.cache:
            try:
                await self.cache.cache_session(session, account)
            except RedisError as exc:
                self.logger.warning("session_cache_write_failed", error=str(exc))
        self.logger.info(
            "session_created",
            account_id=account.id,
            session_id=session.id,
            long_lived=is_mobile or remember_me,
        )
        return session

    @staticmethod
    def _session_from_cache(session_token: str, data: Dict[str, Any]) -> Optional[Session]:
        try:
            return Session(
                id=data["session_id"],
                account_id=data["account_id"],
                session_token=session_token,
                expires_at=datetime.fromisoformat(data["expires_at"]),
                created_at=datetime.fromisoformat(data["created_at"]),
                last_used_at=datetime.fromisoformat(data["last_used_at"]),
                device_info=data.get("device_info"),
                ip_address=data.get("ip_address"),
                user_agent=data.get("user_agent"),
            )
        except (KeyError, TypeError, ValueError):
            return None

    async def validate_session(self, session_token: str) -> Optional[Session]:
        """Live session for ``session_token``, or ``None``.

        Reads the cache first and falls back to the database, refilling the
        cache from the row it finds. Expired sessions are never returned.
        """

        now = self._now()
        if self.cache:
            try:
                data = await self.cache.get_session(session_token)
            except RedisError as exc:
                self.logger.warning("session_cache_read_failed", error=str(exc))
                data = None
            if data:
                cached = self._session_from_cache(session_token, data)
                if cached is not None and not cached.is_expired(now):
                    return cached

        session = await asyncio.to_thread(self.store.find_session_by_token, session_token)
        if session is None or session.is_expired(now):
            return None
        if self.cache:
            account = await asyncio.to_thread(self.store.find_account_by_id, session.account_id)
            if account is not None:
                try:
                    await self.cache.cache_session(session, account)
                except RedisError as exc:
                    self.logger.warning("session_cache_write_failed", error=str(exc))
        return session

    async def refresh_session(
        self, session_token: str, extend_long_lived: bool = False
    ) -> Optional[Session]:
        """Mark a session as used and optionally slide its expiry.

        A missing or already expired session is left untouched and ``None``
        is returned; that is not an error.
        """

        now = self._now()
        expires_at: Optional[datetime] = None
        if extend_long_lived:
            current = await self.validate_session(session_token)
            if current is None:
                return None
            ttl = self.session_ttl(
                is_mobile=is_mobile_device(current.user_agent, current.device_info),
                remember_me=is_long_session(current),
            )
            expires_at = now + ttl
        session = await asyncio.to_thread(
            lambda: self.store.touch_session(
                session_token, last_used_at=now, expires_at=expires_at
            )
        )
        if session is None:
            return None
        if self.cache:
            try:
                await self.cache.touch_session(session_token, now, expires_at)
            except RedisError as exc:
                self.logger.warning("session_cache_touch_failed", error=str(exc))
        self.logger.debug(
            "session_refreshed", session_id=session.id, extended=expires_at is not None
        )
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        return await asyncio.to_thread(self.store.find_session_by_id, session_id)

    async def invalidate_session(self, session_token: str) -> bool:
        if self.cache:
            try:
                await self.cache.delete_session(session_token)
            except RedisError as exc:
                self.logger.warning("session_cache_delete_failed", error=str(exc))
        removed = await asyncio.to_thread(self.store.delete_session, session_token)
        if removed:
            self.logger.info("session_invalidated")
        return removed

    async def invalidate_all_account_sessions(self, account_id: str) -> int:
        removed = await asyncio.to_thread(self.store.delete_account_sessions, account_id)
        if self.cache and removed:
            try:
                await self.cache.delete_sessions(s.session_token for s in removed)
            except RedisError as exc:
                self.logger.warning("session_cache_delete_failed", error=str(exc))
        self.logger.info("account_sessions_invalidated", account_id=account_id, count=len(removed))
        return len(removed)

    async def list_active_sessions(self, account_id: str) -> List[Session]:
        return await asyncio.to_thread(self.store.list_account_sessions, account_id)

    async def cleanup_expired_sessions(self) -> int:
        count = await asyncio.to_thread(self.store.delete_expired_sessions)
        if count:
            self.logger.info("expired_sessions_cleaned", count=count)
        return count


__all__ = [
    "SessionService",
    "SessionStore",
    "is_long_session",
    "is_mobile_device",
]
