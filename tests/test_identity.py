"""Identity resolution: link lookup, email linking, account creation and races."""

import asyncio
import threading

import pytest

from chirpauth.service.errors import StorageConflict, UsernameUnavailable, ValidationError
from chirpauth.service.identity import (
    IdentityResolver,
    derive_username_base,
    fit_display_name,
)
from chirpauth.service.oauth import ProviderProfile
from chirpauth.storage.errors import ConstraintViolation
from chirpauth.storage.memory import MemoryStore
from chirpauth.storage.models import NewExternalLink


def _profile(**overrides):
    data = {
        "provider": "google",
        "provider_account_id": "g-123",
        "email": "Jane.Doe@gmail.com",
        "email_verified": True,
        "display_name": "Jane Doe",
    }
    data.update(overrides)
    return ProviderProfile(**data)


class RacingStore(MemoryStore):
    """Holds the first two link lookups until both have seen the empty state."""

    def __init__(self):
        super().__init__()
        self._barrier = threading.Barrier(2, timeout=5)
        self._lookups = 0
        self._count_lock = threading.Lock()

    def find_external_link(self, provider, provider_account_id):
        result = super().find_external_link(provider, provider_account_id)
        with self._count_lock:
            self._lookups += 1
            hold = self._lookups <= 2
        if hold:
            self._barrier.wait()
        return result


class LosingStore(MemoryStore):
    """A concurrent writer links the identity right after our first lookup."""

    def __init__(self):
        super().__init__()
        self.winner = None

    def find_external_link(self, provider, provider_account_id):
        result = super().find_external_link(provider, provider_account_id)
        if self.winner is None:
            self.winner = super().create_account(
                "winner",
                external_link=NewExternalLink(provider, provider_account_id),
            )
        return result


class AlwaysConflictStore(MemoryStore):
    def create_account(self, username, **kwargs):
        raise ConstraintViolation("username already exists", {"field": "username_key"})


class TestNewIdentity:
    async def test_creates_account_and_link(self):
        store = MemoryStore()
        account = await IdentityResolver(store).resolve(_profile())
        assert account.username == "janedoe"
        assert account.display_name == "Jane Doe"
        assert account.email == "jane.doe@gmail.com"
        assert account.email_verified
        assert account.password_hash is None
        link = store.find_external_link("google", "g-123")
        assert link.account_id == account.id
        assert link.email == "Jane.Doe@gmail.com"

    async def test_second_sign_in_returns_same_account(self):
        store = MemoryStore()
        resolver = IdentityResolver(store)
        first = await resolver.resolve(_profile())
        second = await resolver.resolve(_profile())
        assert first.id == second.id
        assert len(store.accounts) == 1

    async def test_profile_without_email(self):
        store = MemoryStore()
        account = await IdentityResolver(store).resolve(
            _profile(email="", display_name="Zed")
        )
        assert account.email is None
        assert account.username == "zed"

    async def test_username_suffixing(self):
        store = MemoryStore()
        store.create_account("janedoe", password_hash="h")
        store.create_account("janedoe1", password_hash="h")
        account = await IdentityResolver(store).resolve(_profile())
        assert account.username == "janedoe2"

    async def test_suffix_keeps_username_within_limit(self):
        store = MemoryStore()
        store.create_account("abcdefghijkl", password_hash="h")
        account = await IdentityResolver(store).resolve(
            _profile(email="abcdefghijklmnop@gmail.com")
        )
        assert account.username == "abcdefghijkl1"
        assert len(account.username) <= 15

    async def test_exhausted_suffixes_raise_with_suggestions(self):
        store = MemoryStore()
        for name in ("janedoe", "janedoe1", "janedoe2"):
            store.create_account(name, password_hash="h")
        resolver = IdentityResolver(store, max_username_attempts=2)
        with pytest.raises(UsernameUnavailable) as exc_info:
            await resolver.resolve(_profile())
        assert exc_info.value.suggestions[0] == "janedoe1"
        assert store.find_external_link("google", "g-123") is None

    async def test_missing_provider_account_id(self):
        with pytest.raises(ValidationError):
            await IdentityResolver(MemoryStore()).resolve(_profile(provider_account_id="  "))


class TestExistingIdentity:
    async def test_links_existing_account_by_email(self):
        store = MemoryStore()
        existing = store.create_account(
            "jane_doe", email="jane.doe@gmail.com", password_hash="h"
        )
        account = await IdentityResolver(store).resolve(
            _profile(email="JANE.DOE@googlemail.com")
        )
        assert account.id == existing.id
        assert store.find_account_by_id(existing.id).email == "jane.doe@gmail.com"
        link = store.find_external_link("google", "g-123")
        assert link.account_id == existing.id
        assert link.email == "JANE.DOE@googlemail.com"

    async def test_link_email_is_refreshed(self):
        store = MemoryStore()
        resolver = IdentityResolver(store)
        account = await resolver.resolve(_profile())
        again = await resolver.resolve(_profile(email="jane@newmail.com"))
        assert again.id == account.id
        assert store.find_external_link("google", "g-123").email == "jane@newmail.com"
        # the account email is not touched by a returning sign-in
        assert store.find_account_by_id(account.id).email == "jane.doe@gmail.com"

    async def test_orphaned_link_is_a_conflict(self):
        store = MemoryStore()
        account = await IdentityResolver(store).resolve(_profile())
        del store.accounts[account.id]
        with pytest.raises(StorageConflict) as exc_info:
            await IdentityResolver(store).resolve(_profile())
        assert exc_info.value.field == "account_id"


class TestConcurrency:
    async def test_concurrent_first_sign_ins_share_one_account(self):
        store = RacingStore()
        resolver = IdentityResolver(store)
        first, second = await asyncio.gather(
            resolver.resolve(_profile()), resolver.resolve(_profile())
        )
        assert first.id == second.id
        assert len(store.accounts) == 1
        assert len(store.links) == 1

    async def test_lost_race_is_retried(self):
        store = LosingStore()
        account = await IdentityResolver(store).resolve(_profile())
        assert account.id == store.winner.id
        assert len(store.accounts) == 1

    async def test_repeated_conflict_surfaces(self):
        store = AlwaysConflictStore()
        with pytest.raises(StorageConflict) as exc_info:
            await IdentityResolver(store).resolve(_profile())
        assert exc_info.value.field == "username_key"
        assert exc_info.value.status_code == 409


def test_derive_username_base():
    assert derive_username_base(_profile(email="Mary.Ann+x@gmail.com")) == "maryannx"
    assert derive_username_base(_profile(email="jo@gmail.com")) == "jo_user"
    assert derive_username_base(_profile(email="", display_name="")) == "user"
    assert derive_username_base(_profile(email="", display_name="Ann Lee")) == "annlee"


def test_fit_display_name_stays_within_limit():
    fitted = fit_display_name("Tom & Jerry " * 10)
    assert len(fitted) <= 50
    assert fitted.startswith("Tom &amp; Jerry")
    assert fit_display_name("") == ""
