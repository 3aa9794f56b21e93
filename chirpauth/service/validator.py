"""Re-validate bearer token claims against live account and session state.

``validate`` walks account lookup, suspension check and, when the token
names a session, session lookup and expiry check. An accepted request with a
session schedules a liveness refresh as a detached task. That task is never
awaited by ``validate`` and its failure never changes the outcome:
``_on_refresh_done`` is the one place refresh errors are logged and dropped.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Protocol, Set, Union

from chirpauth.logging import get_logger, sanitize_error_message
from chirpauth.service.errors import AccountSuspended, SessionInvalid, UserNotFound
from chirpauth.service.tokens import TokenPayload
from chirpauth.storage.models import Account, Principal, Session

logger = get_logger(__name__)

# refresh_sink(session_token, extend_long_lived)
RefreshSink = Callable[[str, bool], Union[Awaitable[Any], Any]]


class ValidatorStore(Protocol):
    def find_account_by_id(self, account_id: str) -> Optional[Account]: ...

    def find_session_by_id(self, session_id: str) -> Optional[Session]: ...


class TokenValidator:
    def __init__(
        self,
        store: ValidatorStore,
        refresh_sink: RefreshSink,
        *,
        extend_long_lived: bool = False,
    ) -> None:
        self.store = store
        self.refresh_sink = refresh_sink
        self.extend_long_lived = extend_long_lived
        # Strong references only; tasks remove themselves when done
        self._refresh_tasks: Set[asyncio.Task] = set()

    async def validate(self, payload: TokenPayload) -> Principal:
        account = await asyncio.to_thread(self.store.find_account_by_id, payload.sub)
        if account is None:
            logger.info("token_subject_not_found", account_id=payload.sub)
            raise UserNotFound()
        if account.is_suspended:
            logger.info("token_account_suspended", account_id=account.id)
            raise AccountSuspended(account.suspension_reason)

        session_ref = payload.sid
        if session_ref:
            session = await asyncio.to_thread(self.store.find_session_by_id, session_ref)
            # Missing, foreign and expired sessions are reported identically
            if session is None or session.account_id != account.id or session.is_expired():
                logger.info("token_session_invalid", account_id=account.id)
                raise SessionInvalid()
            self._schedule_refresh(session.session_token)

        return Principal(
            account_id=account.id,
            username=account.username,
            email=account.email,
            display_name=account.display_name,
            is_verified=account.is_verified,
            email_verified=account.email_verified,
            session_ref=session_ref,
        )

    def _schedule_refresh(self, session_token: str) -> None:
        task = asyncio.create_task(self._run_refresh(session_token))
        self._refresh_tasks.add(task)
        task.add_done_callback(self._on_refresh_done)

    async def _run_refresh(self, session_token: str) -> None:
        result = self.refresh_sink(session_token, self.extend_long_lived)
        if inspect.isawaitable(result):
            await result

    def _on_refresh_done(self, task: asyncio.Task) -> None:
        self._refresh_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "session_refresh_failed",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )

    @property
    def pending_refreshes(self) -> int:
        return len(self._refresh_tasks)

    async def drain(self) -> None:
        """Wait for scheduled refreshes to finish (shutdown and tests)."""

        while self._refresh_tasks:
            await asyncio.gather(*list(self._refresh_tasks), return_exceptions=True)


__all__ = ["RefreshSink", "TokenValidator", "ValidatorStore"]
