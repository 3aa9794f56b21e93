from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from chirpauth.logging import get_logger
from chirpauth.storage.errors import ConstraintViolation
from chirpauth.storage.models import (
    Account,
    ExternalIdentityLink,
    NewExternalLink,
    Session,
    utcnow,
)


class MemoryStore:
    """In-memory backing store used for tests and single-process deployments.

    Every read and write happens under one ``RLock`` so that the
    check-then-insert sequences below are atomic, mirroring the unique
    indexes the Postgres schema relies on. Lookups return copies; callers
    change state only through the store methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.links: Dict[str, ExternalIdentityLink] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helper methods can re-enter while a writer holds the lock
        self._data_lock = threading.RLock()

    # accounts
    def find_account_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def find_account_by_email_key(self, email_key: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email_key == email_key), None
            )
            return replace(account) if account else None

    def find_account_by_username_key(self, username_key: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.username_key == username_key),
                None,
            )
            return replace(account) if account else None

    def create_account(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        display_name: Optional[str] = None,
        email_verified: bool = False,
        external_link: Optional[NewExternalLink] = None,
    ) -> Account:
        """Insert an account, and its first external link when given, atomically."""

        if not password_hash and external_link is None:
            raise ValueError("account requires a password hash or an external link")
        account = Account.new(
            username,
            email=email,
            password_hash=password_hash,
            display_name=display_name,
            email_verified=email_verified,
        )
        with self._data_lock:
            self._check_account_unique(account)
            if external_link is not None:
                self._check_link_unique(
                    external_link.provider, external_link.provider_account_id
                )
            self.accounts[account.id] = account
            if external_link is not None:
                link = ExternalIdentityLink.new(
                    account.id,
                    external_link.provider,
                    external_link.provider_account_id,
                    external_link.email,
                )
                self.links[link.id] = link
            return replace(account)

    def _check_account_unique(self, account: Account) -> None:
        for existing in self.accounts.values():
            if existing.username_key == account.username_key:
                raise ConstraintViolation(
                    "username already exists", {"field": "username_key"}
                )
            if account.email_key and existing.email_key == account.email_key:
                raise ConstraintViolation("email already exists", {"field": "email_key"})

    # external identity links
    def find_external_link(
        self, provider: str, provider_account_id: str
    ) -> Optional[ExternalIdentityLink]:
        with self._data_lock:
            link = next(
                (
                    link
                    for link in self.links.values()
                    if link.provider == provider
                    and link.provider_account_id == provider_account_id
                ),
                None,
            )
            return replace(link) if link else None

    def create_external_link(
        self,
        account_id: str,
        provider: str,
        provider_account_id: str,
        email: Optional[str] = None,
    ) -> ExternalIdentityLink:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "link account missing", {"field": "account_id"}
                )
            self._check_link_unique(provider, provider_account_id)
            link = ExternalIdentityLink.new(account_id, provider, provider_account_id, email)
            self.links[link.id] = link
            return replace(link)

    def _check_link_unique(self, provider: str, provider_account_id: str) -> None:
        for existing in self.links.values():
            if (
                existing.provider == provider
                and existing.provider_account_id == provider_account_id
            ):
                raise ConstraintViolation(
                    "external identity already linked", {"field": "provider_identity"}
                )

    def update_external_link_email(
        self, link_id: str, email: Optional[str]
    ) -> Optional[ExternalIdentityLink]:
        with self._data_lock:
            link = self.links.get(link_id)
            if not link:
                return None
            link.email = email or None
            link.updated_at = utcnow()
            return replace(link)

    def list_account_links(self, account_id: str) -> List[ExternalIdentityLink]:
        with self._data_lock:
            return [
                replace(link)
                for link in self.links.values()
                if link.account_id == account_id
            ]

    # sessions
    def create_session(
        self,
        account_id: str,
        ttl: timedelta,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "session account missing", {"field": "account_id"}
                )
            sess = Session.new(
                account_id,
                ttl,
                device_info=device_info,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.sessions[sess.id] = sess
            return replace(sess)

    def find_session_by_id(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def find_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self._session_for_token(session_token)
            return replace(sess) if sess else None

    def _session_for_token(self, session_token: str) -> Optional[Session]:
        return next(
            (s for s in self.sessions.values() if s.session_token == session_token),
            None,
        )

    def touch_session(
        self,
        session_token: str,
        *,
        last_used_at: datetime,
        expires_at: Optional[datetime] = None,
    ) -> Optional[Session]:
        """Record use of a live session; expired or missing sessions are left alone."""

        with self._data_lock:
            sess = self._session_for_token(session_token)
            if not sess or sess.is_expired(last_used_at):
                return None
            sess.last_used_at = last_used_at
            if expires_at is not None:
                sess.expires_at = expires_at
            return replace(sess)

    def delete_session(self, session_token: str) -> bool:
        with self._data_lock:
            sess = self._session_for_token(session_token)
            if not sess:
                return False
            self.sessions.pop(sess.id, None)
            return True

    def delete_account_sessions(self, account_id: str) -> List[Session]:
        with self._data_lock:
            stale = [s for s in self.sessions.values() if s.account_id == account_id]
            for sess in stale:
                self.sessions.pop(sess.id, None)
            return stale

    def list_account_sessions(
        self, account_id: str, *, now: Optional[datetime] = None
    ) -> List[Session]:
        now = now or utcnow()
        with self._data_lock:
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.account_id == account_id and not s.is_expired(now)
            ]
        return sorted(active, key=lambda s: s.last_used_at, reverse=True)

    def delete_expired_sessions(self, *, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [sid for sid, s in self.sessions.items() if s.is_expired(now)]
            for sid in expired:
                self.sessions.pop(sid, None)
        if expired:
            self.logger.info("expired_sessions_deleted", count=len(expired))
        return len(expired)


__all__ = ["MemoryStore"]
