import asyncio
from datetime import timedelta

import pytest

from chirpauth.service.errors import AccountSuspended, SessionInvalid, UserNotFound
from chirpauth.service.tokens import ACCESS, TokenPayload
from chirpauth.service.validator import TokenValidator
from chirpauth.storage.memory import MemoryStore
from chirpauth.storage.models import utcnow


def _payload(account_id, sid=None):
    now = int(utcnow().timestamp())
    return TokenPayload(
        sub=account_id,
        username="jane_doe",
        email=None,
        sid=sid,
        iat=now,
        exp=now + 900,
        token_type=ACCESS,
        jti="jti",
    )


class RefreshRecorder:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def __call__(self, session_token, extend_long_lived):
        self.calls.append((session_token, extend_long_lived))
        if self.error:
            raise self.error


@pytest.fixture
def seeded():
    store = MemoryStore()
    account = store.create_account(
        "jane_doe", email="jane@mail.com", password_hash="h", display_name="Jane"
    )
    session = store.create_session(account.id, timedelta(days=30))
    return store, account, session


async def test_valid_token_with_session(seeded):
    store, account, session = seeded
    refresh = RefreshRecorder()
    validator = TokenValidator(store, refresh, extend_long_lived=True)
    principal = await validator.validate(_payload(account.id, session.id))
    assert principal.account_id == account.id
    assert principal.display_name == "Jane"
    assert principal.session_ref == session.id
    await validator.drain()
    assert refresh.calls == [(session.session_token, True)]
    assert validator.pending_refreshes == 0


async def test_token_without_session_skips_refresh(seeded):
    store, account, _ = seeded
    refresh = RefreshRecorder()
    validator = TokenValidator(store, refresh)
    principal = await validator.validate(_payload(account.id))
    assert principal.session_ref is None
    await validator.drain()
    assert refresh.calls == []


async def test_unknown_subject(seeded):
    store, _, _ = seeded
    validator = TokenValidator(store, RefreshRecorder())
    with pytest.raises(UserNotFound):
        await validator.validate(_payload("no-such-account"))


async def test_suspended_account_reports_reason(seeded):
    store, account, session = seeded
    store.accounts[account.id].is_suspended = True
    store.accounts[account.id].suspension_reason = "spam"
    refresh = RefreshRecorder()
    validator = TokenValidator(store, refresh)
    with pytest.raises(AccountSuspended) as exc_info:
        await validator.validate(_payload(account.id, session.id))
    assert exc_info.value.reason == "spam"
    assert str(exc_info.value) == "Account suspended: spam"
    assert refresh.calls == []


async def test_missing_expired_and_foreign_sessions_are_invalid(seeded):
    store, account, session = seeded
    other = store.create_account("other_user", password_hash="h")
    foreign = store.create_session(other.id, timedelta(days=1))
    validator = TokenValidator(store, RefreshRecorder())

    with pytest.raises(SessionInvalid):
        await validator.validate(_payload(account.id, "missing-session"))
    with pytest.raises(SessionInvalid):
        await validator.validate(_payload(account.id, foreign.id))

    store.sessions[session.id].expires_at = utcnow() - timedelta(seconds=1)
    with pytest.raises(SessionInvalid):
        await validator.validate(_payload(account.id, session.id))


async def test_refresh_failure_does_not_reject(seeded):
    store, account, session = seeded
    refresh = RefreshRecorder(error=RuntimeError("database unavailable"))
    validator = TokenValidator(store, refresh)
    principal = await validator.validate(_payload(account.id, session.id))
    assert principal.account_id == account.id
    await validator.drain()
    assert len(refresh.calls) == 1
    assert validator.pending_refreshes == 0


async def test_validate_does_not_wait_for_refresh(seeded):
    store, account, session = seeded
    release = asyncio.Event()
    started = []

    async def slow_refresh(token, extend):
        started.append(token)
        await release.wait()

    validator = TokenValidator(store, slow_refresh)
    await validator.validate(_payload(account.id, session.id))
    assert validator.pending_refreshes == 1
    release.set()
    await validator.drain()
    assert started == [session.session_token]


async def test_sync_refresh_sink_is_supported(seeded):
    store, account, session = seeded
    calls = []
    validator = TokenValidator(store, lambda token, extend: calls.append(token))
    await validator.validate(_payload(account.id, session.id))
    await validator.drain()
    assert calls == [session.session_token]


async def test_cancelled_request_does_not_cancel_refresh(seeded):
    store, account, session = seeded
    entered = asyncio.Event()
    release = asyncio.Event()
    finished = []

    async def slow_refresh(token, extend):
        entered.set()
        await release.wait()
        finished.append(token)

    validator = TokenValidator(store, slow_refresh)

    async def request():
        await validator.validate(_payload(account.id, session.id))
        await asyncio.Event().wait()

    handler = asyncio.create_task(request())
    await entered.wait()
    handler.cancel()
    with pytest.raises(asyncio.CancelledError):
        await handler

    assert validator.pending_refreshes == 1
    release.set()
    await validator.drain()
    assert finished == [session.session_token]
    assert validator.pending_refreshes == 0
