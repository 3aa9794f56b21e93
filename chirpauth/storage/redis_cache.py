from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

import redis.asyncio as aioredis
from redis import Redis

from chirpauth.storage.models import Account, Session


class RedisSessionCache:
    """Thin Redis wrapper mirroring live session data for fast lookups.

    Entries live under ``session:{session_token}`` and expire together with
    the session they mirror. The database stays the source of truth.
    """

    KEY_PREFIX = "session:"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, client=None):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @classmethod
    def _key(cls, session_token: str) -> str:
        return f"{cls.KEY_PREFIX}{session_token}"

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL until ``expires_at``, clamped to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""

        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def session_data(session: Session, account: Account) -> Dict[str, Any]:
        return {
            "session_id": session.id,
            "account_id": account.id,
            "username": account.username,
            "email": account.email,
            "device_info": session.device_info,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "created_at": session.created_at.isoformat(),
            "last_used_at": session.last_used_at.isoformat(),
            "expires_at": session.expires_at.isoformat(),
        }

    async def cache_session(self, session: Session, account: Account) -> None:
        await self.client.set(
            self._key(session.session_token),
            json.dumps(self.session_data(session, account)),
            ex=self._ttl_seconds(session.expires_at),
        )

    async def get_session(self, session_token: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(self._key(session_token))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            await self.client.delete(self._key(session_token))
            return None

    async def touch_session(
        self,
        session_token: str,
        last_used_at: datetime,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        """Update cached last-used time, and the TTL when the expiry moved.

        Returns False when nothing is cached for the token.
        """

        key = self._key(session_token)
        raw = await self.client.get(key)
        if not raw:
            return False
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            await self.client.delete(key)
            return False
        data["last_used_at"] = last_used_at.isoformat()
        if expires_at is not None:
            data["expires_at"] = expires_at.isoformat()
            ttl = self._ttl_seconds(expires_at)
        else:
            ttl = await self.client.ttl(key)
            if ttl <= 0:
                return False
        await self.client.set(key, json.dumps(data), ex=ttl)
        return True

    async def delete_session(self, session_token: str) -> None:
        await self.client.delete(self._key(session_token))

    async def delete_sessions(self, session_tokens: Iterable[str]) -> int:
        keys = [self._key(token) for token in session_tokens]
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisSessionCache"]
