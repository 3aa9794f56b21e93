from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from chirpauth.logging import get_logger
from chirpauth.storage.errors import ConstraintViolation
from chirpauth.storage.models import (
    Account,
    ExternalIdentityLink,
    NewExternalLink,
    Session,
    utcnow,
)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS account (
    id TEXT PRIMARY KEY,
    username VARCHAR(15) NOT NULL,
    username_key VARCHAR(15) NOT NULL,
    email TEXT,
    email_key TEXT,
    password_hash TEXT,
    display_name TEXT NOT NULL DEFAULT '',
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
    is_suspended BOOLEAN NOT NULL DEFAULT FALSE,
    suspension_reason TEXT,
    follower_count INTEGER NOT NULL DEFAULT 0,
    following_count INTEGER NOT NULL DEFAULT 0,
    post_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS account_username_key_uq ON account (username_key);
CREATE UNIQUE INDEX IF NOT EXISTS account_email_key_uq ON account (email_key);

CREATE TABLE IF NOT EXISTS external_identity_link (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES account (id) ON DELETE CASCADE,
    provider TEXT NOT NULL,
    provider_account_id TEXT NOT NULL,
    email TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS external_identity_link_provider_uq
    ON external_identity_link (provider, provider_account_id);

CREATE TABLE IF NOT EXISTS auth_session (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES account (id) ON DELETE CASCADE,
    session_token TEXT NOT NULL,
    device_info TEXT,
    ip_address TEXT,
    user_agent TEXT,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_used_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS auth_session_token_uq ON auth_session (session_token);
CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id);
"""

# unique index name -> logical field reported in ConstraintViolation.detail
_CONSTRAINT_FIELDS = {
    "account_username_key_uq": "username_key",
    "account_email_key_uq": "email_key",
    "external_identity_link_provider_uq": "provider_identity",
    "auth_session_token_uq": "session_token",
}


def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _CONSTRAINT_FIELDS.get(constraint, constraint or None)
    return ConstraintViolation("unique constraint violated", {"field": field})


def _aware(value: Optional[datetime]) -> datetime:
    if value is None:
        return utcnow()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Postgres-backed store for accounts, provider links and sessions.

    Uniqueness is enforced by the indexes in ``SCHEMA_SQL``; violations are
    re-raised as ``ConstraintViolation`` and every other driver error
    propagates unchanged.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create tables and unique indexes when they are missing."""

        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)

    def _verify_required_schema(self) -> None:
        required_tables = ["account", "external_identity_link", "auth_session"]
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_name = ANY(%s)",
                (required_tables,),
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [name for name in required_tables if name not in present]
        if missing:
            self.logger.warning("postgres_schema_missing", tables=missing)
            self.ensure_schema()

    # row mapping
    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            username=row["username"],
            username_key=row["username_key"],
            display_name=row.get("display_name") or "",
            email=row.get("email"),
            email_key=row.get("email_key"),
            password_hash=row.get("password_hash"),
            email_verified=bool(row.get("email_verified", False)),
            is_verified=bool(row.get("is_verified", False)),
            is_suspended=bool(row.get("is_suspended", False)),
            suspension_reason=row.get("suspension_reason"),
            follower_count=row.get("follower_count", 0),
            following_count=row.get("following_count", 0),
            post_count=row.get("post_count", 0),
            created_at=_aware(row.get("created_at")),
            updated_at=_aware(row.get("updated_at")),
        )

    @staticmethod
    def _link_from_row(row: Dict[str, Any]) -> ExternalIdentityLink:
        return ExternalIdentityLink(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            provider=row["provider"],
            provider_account_id=row["provider_account_id"],
            email=row.get("email"),
            created_at=_aware(row.get("created_at")),
            updated_at=_aware(row.get("updated_at")),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            session_token=row["session_token"],
            expires_at=_aware(row["expires_at"]),
            created_at=_aware(row.get("created_at")),
            last_used_at=_aware(row.get("last_used_at")),
            device_info=row.get("device_info"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    # accounts
    def _find_account(self, column: str, value: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM account WHERE {column} = %s", (value,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def find_account_by_id(self, account_id: str) -> Optional[Account]:
        return self._find_account("id", account_id)

    def find_account_by_email_key(self, email_key: str) -> Optional[Account]:
        return self._find_account("email_key", email_key)

    def find_account_by_username_key(self, username_key: str) -> Optional[Account]:
        return self._find_account("username_key", username_key)

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
        """Insert an account, and its first external link when given, in one transaction."""

        if not password_hash and external_link is None:
            raise ValueError("account requires a password hash or an external link")
        account = Account.new(
            username,
            email=email,
            password_hash=password_hash,
            display_name=display_name,
            email_verified=email_verified,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (
                        id, username, username_key, email, email_key, password_hash,
                        display_name, email_verified, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.username,
                        account.username_key,
                        account.email,
                        account.email_key,
                        account.password_hash,
                        account.display_name,
                        account.email_verified,
                        account.created_at,
                        account.updated_at,
                    ),
                )
                if external_link is not None:
                    self._insert_link(
                        conn,
                        ExternalIdentityLink.new(
                            account.id,
                            external_link.provider,
                            external_link.provider_account_id,
                            external_link.email,
                        ),
                    )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return account

    # external identity links
    @staticmethod
    def _insert_link(conn, link: ExternalIdentityLink) -> None:
        conn.execute(
            """
            INSERT INTO external_identity_link (
                id, account_id, provider, provider_account_id, email, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                link.id,
                link.account_id,
                link.provider,
                link.provider_account_id,
                link.email,
                link.created_at,
                link.updated_at,
            ),
        )

    def find_external_link(
        self, provider: str, provider_account_id: str
    ) -> Optional[ExternalIdentityLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM external_identity_link WHERE provider = %s AND provider_account_id = %s",
                (provider, provider_account_id),
            ).fetchone()
        return self._link_from_row(row) if row else None

    def create_external_link(
        self,
        account_id: str,
        provider: str,
        provider_account_id: str,
        email: Optional[str] = None,
    ) -> ExternalIdentityLink:
        link = ExternalIdentityLink.new(account_id, provider, provider_account_id, email)
        try:
            with self._connect() as conn:
                self._insert_link(conn, link)
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "link account missing", {"field": "account_id"}
            ) from exc
        return link

    def update_external_link_email(
        self, link_id: str, email: Optional[str]
    ) -> Optional[ExternalIdentityLink]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE external_identity_link SET email = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (email or None, link_id),
            ).fetchone()
        return self._link_from_row(row) if row else None

    def list_account_links(self, account_id: str) -> List[ExternalIdentityLink]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM external_identity_link WHERE account_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [self._link_from_row(row) for row in rows]

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
        sess = Session.new(
            account_id,
            ttl,
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, account_id, session_token, device_info, ip_address,
                        user_agent, expires_at, created_at, last_used_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.account_id,
                        sess.session_token,
                        sess.device_info,
                        sess.ip_address,
                        sess.user_agent,
                        sess.expires_at,
                        sess.created_at,
                        sess.last_used_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session account missing", {"field": "account_id"}
            ) from exc
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return sess

    def find_session_by_id(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE session_token = %s", (session_token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(
        self,
        session_token: str,
        *,
        last_used_at: datetime,
        expires_at: Optional[datetime] = None,
    ) -> Optional[Session]:
        """Record use of a live session; expired or missing sessions are left alone."""

        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET last_used_at = %s, expires_at = COALESCE(%s, expires_at)
                WHERE session_token = %s AND expires_at >= %s
                RETURNING *
                """,
                (last_used_at, expires_at, session_token, last_used_at),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE session_token = %s", (session_token,)
            )
            return result.rowcount > 0

    def delete_account_sessions(self, account_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM auth_session WHERE account_id = %s RETURNING *",
                (account_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def list_account_sessions(
        self, account_id: str, *, now: Optional[datetime] = None
    ) -> List[Session]:
        now = now or utcnow()
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE account_id = %s AND expires_at >= %s
                ORDER BY last_used_at DESC
                """,
                (account_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(self, *, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at < %s", (now,)
            )
            count = result.rowcount
        if count:
            self.logger.info("expired_sessions_deleted", count=count)
        return count

    def close(self) -> None:
        self.pool.close()


__all__ = ["PostgresStore", "SCHEMA_SQL"]
