from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from chirpauth.config import Settings, get_settings, reset_settings_cache
from chirpauth.logging import get_logger
from chirpauth.service.auth import AuthService
from chirpauth.service.identity import IdentityResolver
from chirpauth.service.oauth import GoogleOAuthClient
from chirpauth.service.passwords import PasswordHasher
from chirpauth.service.sessions import SessionService
from chirpauth.service.tokens import TokenService
from chirpauth.service.validator import TokenValidator
from chirpauth.storage.memory import MemoryStore
from chirpauth.storage.postgres import PostgresStore
from chirpauth.storage.redis_cache import RedisSessionCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging."""

    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the wired service instances for one process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        logger.info(
            "runtime_init_started",
            use_memory_store=use_memory,
            test_mode=self.settings.test_mode,
        )

        self.store: Union[MemoryStore, PostgresStore]
        if use_memory:
            self.store = MemoryStore()
        else:
            self.store = PostgresStore(self.settings.database_url)
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if use_memory else "postgres",
        )

        self.cache: Optional[RedisSessionCache] = None
        if self.settings.redis_url and not self.settings.test_mode:
            cache = RedisSessionCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                self.cache = cache
            except RedisError as exc:
                # The cache is a mirror; sessions still work from the store
                logger.warning(
                    "redis_session_cache_disabled",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        self.oauth_client = GoogleOAuthClient(self.settings)
        self.tokens = TokenService(self.settings)
        self.passwords = PasswordHasher()
        self.sessions = SessionService(self.store, self.settings, cache=self.cache)
        self.resolver = IdentityResolver(
            self.store, max_username_attempts=self.settings.max_username_attempts
        )
        self.validator = TokenValidator(
            self.store,
            self.sessions.refresh_session,
            extend_long_lived=self.settings.session_sliding_expiration,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            oauth_client=self.oauth_client,
            sessions=self.sessions,
            tokens=self.tokens,
            passwords=self.passwords,
            resolver=self.resolver,
            validator=self.validator,
        )
        logger.info(
            "runtime_init_completed",
            redis_cache=self.cache is not None,
            google_oauth=self.settings.google_oauth_configured,
        )

    async def close(self) -> None:
        await self.validator.drain()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton, double-checked under a lock."""

    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
