from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chirpauth.config import Settings
from chirpauth.service.sessions import SessionService, is_long_session, is_mobile_device
from chirpauth.storage.memory import MemoryStore
from chirpauth.storage.models import utcnow
from chirpauth.storage.redis_cache import RedisSessionCache


class RecordingCache:
    """Stands in for RedisSessionCache and records every call."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []
        self.entries = {}

    async def _record(self, name, *args):
        self.calls.append((name, args))
        if self.fail:
            raise RedisConnectionError("redis down")

    async def cache_session(self, session, account):
        await self._record("cache_session", session.session_token)
        self.entries[session.session_token] = RedisSessionCache.session_data(session, account)

    async def get_session(self, token):
        await self._record("get_session", token)
        return self.entries.get(token)

    async def touch_session(self, token, last_used_at, expires_at=None):
        await self._record("touch_session", token, expires_at)
        return True

    async def delete_session(self, token):
        await self._record("delete_session", token)

    async def delete_sessions(self, tokens):
        tokens = list(tokens)
        await self._record("delete_sessions", tokens)
        return len(tokens)


@pytest.fixture
def session_settings():
    return Settings(web_session_timeout_days=30, mobile_session_timeout_days=90)


@pytest.fixture
def account_store():
    store = MemoryStore()
    account = store.create_account("jane_doe", password_hash="h")
    return store, account


def test_mobile_detection():
    assert is_mobile_device("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0)", None)
    assert is_mobile_device(None, "Android tablet")
    assert not is_mobile_device("Mozilla/5.0 (X11; Linux x86_64)", "desktop")
    assert not is_mobile_device(None, None)


class TestCreate:
    async def test_web_session_lifetime(self, session_settings, account_store):
        store, account = account_store
        service = SessionService(store, session_settings)
        sess = await service.create_session(account, user_agent="Mozilla/5.0 (iPhone)")
        # only the explicit flag selects the mobile lifetime
        assert sess.expires_at - sess.created_at == timedelta(days=30)
        assert not is_long_session(sess)

    async def test_mobile_and_remember_me_lifetime(self, session_settings, account_store):
        store, account = account_store
        service = SessionService(store, session_settings)
        mobile = await service.create_session(account, is_mobile=True)
        remembered = await service.create_session(account, remember_me=True)
        assert mobile.expires_at - mobile.created_at == timedelta(days=90)
        assert remembered.expires_at - remembered.created_at == timedelta(days=90)
        assert is_long_session(remembered)

    async def test_cache_failure_does_not_fail_creation(self, session_settings, account_store):
        store, account = account_store
        cache = RecordingCache(fail=True)
        service = SessionService(store, session_settings, cache=cache)
        sess = await service.create_session(account)
        assert store.find_session_by_id(sess.id) is not None
        assert cache.calls[0][0] == "cache_session"


class TestRefresh:
    async def test_refresh_updates_last_used_only(self, session_settings, account_store):
        store, account = account_store
        cache = RecordingCache()
        service = SessionService(store, session_settings, cache=cache)
        sess = await service.create_session(account)
        refreshed = await service.refresh_session(sess.session_token)
        assert refreshed.last_used_at >= sess.last_used_at
        assert refreshed.expires_at == sess.expires_at
        assert cache.calls[-1] == ("touch_session", (sess.session_token, None))

    async def test_refresh_can_slide_expiry(self, session_settings, account_store):
        store, account = account_store
        service = SessionService(store, session_settings)
        sess = await service.create_session(account, remember_me=True)
        store.sessions[sess.id].created_at = utcnow() - timedelta(days=89)
        store.sessions[sess.id].expires_at = utcnow() + timedelta(days=1)
        refreshed = await service.refresh_session(sess.session_token, extend_long_lived=True)
        remaining = refreshed.expires_at - utcnow()
        assert timedelta(days=89) < remaining <= timedelta(days=90)

    async def test_refresh_of_missing_or_expired_is_noop(self, session_settings, account_store):
        store, account = account_store
        cache = RecordingCache()
        service = SessionService(store, session_settings, cache=cache)
        sess = await service.create_session(account)
        store.sessions[sess.id].expires_at = utcnow() - timedelta(seconds=1)
        assert await service.refresh_session(sess.session_token) is None
        assert await service.refresh_session(sess.session_token, True) is None
        assert await service.refresh_session("missing") is None
        assert [c[0] for c in cache.calls if c[0] != "get_session"] == ["cache_session"]


class TestValidate:
    async def test_cache_hit_skips_database(self, session_settings, account_store):
        store, account = account_store
        cache = RecordingCache()
        service = SessionService(store, session_settings, cache=cache)
        sess = await service.create_session(account, user_agent="Chirp/1.0")
        del store.sessions[sess.id]
        found = await service.validate_session(sess.session_token)
        assert found.id == sess.id
        assert found.account_id == account.id
        assert found.user_agent == "Chirp/1.0"
        assert found.expires_at == sess.expires_at

    async def test_miss_falls_back_to_database_and_refills(
        self, session_settings, account_store
    ):
        store, account = account_store
        sess = store.create_session(account.id, timedelta(days=1))
        cache = RecordingCache()
        service = SessionService(store, session_settings, cache=cache)
        found = await service.validate_session(sess.session_token)
        assert found.id == sess.id
        assert cache.entries[sess.session_token]["session_id"] == sess.id
        assert [c[0] for c in cache.calls] == ["get_session", "cache_session"]

    async def test_expired_or_missing_is_none(self, session_settings, account_store):
        store, account = account_store
        cache = RecordingCache()
        service = SessionService(store, session_settings, cache=cache)
        sess = store.create_session(account.id, timedelta(days=1))
        store.sessions[sess.id].expires_at = utcnow() - timedelta(seconds=1)
        assert await service.validate_session(sess.session_token) is None
        assert await service.validate_session("missing") is None
        assert cache.entries == {}

    async def test_stale_or_corrupt_cache_entry_is_ignored(
        self, session_settings, account_store
    ):
        store, account = account_store
        cache = RecordingCache()
        service = SessionService(store, session_settings, cache=cache)
        sess = await service.create_session(account)
        cache.entries[sess.session_token]["expires_at"] = (
            utcnow() - timedelta(minutes=1)
        ).isoformat()
        assert (await service.validate_session(sess.session_token)).id == sess.id

        cache.entries[sess.session_token] = {"account_id": account.id}
        assert (await service.validate_session(sess.session_token)).id == sess.id

        store.sessions[sess.id].expires_at = utcnow() - timedelta(seconds=1)
        cache.entries[sess.session_token]["expires_at"] = (
            utcnow() - timedelta(minutes=1)
        ).isoformat()
        assert await service.validate_session(sess.session_token) is None

    async def test_cache_outage_falls_back_to_database(self, session_settings, account_store):
        store, account = account_store
        sess = store.create_session(account.id, timedelta(days=1))
        service = SessionService(store, session_settings, cache=RecordingCache(fail=True))
        assert (await service.validate_session(sess.session_token)).id == sess.id

    async def test_sliding_refresh_reads_through_cache(self, session_settings, account_store):
        store, account = account_store
        cache = RecordingCache()
        service = SessionService(store, session_settings, cache=cache)
        sess = await service.create_session(account, remember_me=True)
        refreshed = await service.refresh_session(sess.session_token, extend_long_lived=True)
        assert refreshed is not None
        assert ("get_session", (sess.session_token,)) in cache.calls
        assert cache.calls[-1][0] == "touch_session"


class TestInvalidate:
    async def test_invalidate_single_session(self, session_settings, account_store):
        store, account = account_store
        cache = RecordingCache()
        service = SessionService(store, session_settings, cache=cache)
        sess = await service.create_session(account)
        assert await service.invalidate_session(sess.session_token)
        assert not await service.invalidate_session(sess.session_token)
        assert await service.get_session(sess.id) is None
        assert ("delete_session", (sess.session_token,)) in cache.calls

    async def test_invalidate_all(self, session_settings, account_store):
        store, account = account_store
        cache = RecordingCache()
        service = SessionService(store, session_settings, cache=cache)
        first = await service.create_session(account)
        second = await service.create_session(account)
        assert await service.invalidate_all_account_sessions(account.id) == 2
        assert await service.list_active_sessions(account.id) == []
        deleted = [c for c in cache.calls if c[0] == "delete_sessions"][0][1][0]
        assert sorted(deleted) == sorted([first.session_token, second.session_token])

    async def test_invalidate_survives_cache_outage(self, session_settings, account_store):
        store, account = account_store
        service = SessionService(store, session_settings, cache=RecordingCache(fail=True))
        sess = await service.create_session(account)
        assert await service.invalidate_session(sess.session_token)
        assert store.find_session_by_id(sess.id) is None


async def test_cleanup_expired_sessions(session_settings, account_store):
    store, account = account_store
    service = SessionService(store, session_settings)
    stale = await service.create_session(account)
    await service.create_session(account)
    store.sessions[stale.id].expires_at = utcnow() - timedelta(days=1)
    assert await service.cleanup_expired_sessions() == 1
    assert len(await service.list_active_sessions(account.id)) == 1
