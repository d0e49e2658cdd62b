"""
Session validation and refresh.

Holds one session per signed-in user, refreshes expired sessions through
the identity provider and revalidates held sessions in the background.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol

from .clock import Clock, utc_now
from .errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_REVALIDATE_INTERVAL = timedelta(minutes=5)


@dataclass(frozen=True)
class Session:
    """Opaque credential bundle issued by the identity provider."""
    user_id: str
    access_token: str
    expires_at: datetime


@dataclass(frozen=True)
class Credentials:
    """What the identity provider needs to authenticate a user."""
    email: str
    password: Optional[str] = None
    oauth_provider: Optional[str] = None


@dataclass(frozen=True)
class RefreshedSession:
    access_token: str
    expires_at: datetime


class IdentityProvider(Protocol):
    """External service performing credential verification.

    Every method raises ``ProviderError`` on failure.
    """

    async def sign_in(self, credentials: Credentials) -> Session:
        ...

    async def sign_up(self, credentials: Credentials) -> Session:
        ...

    async def send_password_reset(self, email: str) -> None:
        ...

    async def refresh_session(self, access_token: str) -> RefreshedSession:
        ...


class SessionValidator:
    """Validates held sessions and de-duplicates refreshes per user.

    Args:
        provider: Identity provider used for refreshes
        clock: Time source
        refresh_skew: Treat sessions expiring within this margin as expired
        revalidate_interval: Period of the background revalidation loop
    """

    def __init__(
        self,
        provider: IdentityProvider,
        clock: Clock = utc_now,
        refresh_skew: timedelta = timedelta(0),
        revalidate_interval: timedelta = DEFAULT_REVALIDATE_INTERVAL,
    ):
        self.provider = provider
        self.refresh_skew = refresh_skew
        self.revalidate_interval = revalidate_interval
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._refreshing: Dict[str, "asyncio.Task[Optional[Session]]"] = {}
        self._revalidation_task: Optional[asyncio.Task] = None

    def is_session_valid(self, session: Optional[Session]) -> bool:
        """Pure expiry check."""
        if session is None:
            return False
        return session.expires_at > self._clock() + self.refresh_skew

    def hold(self, session: Session) -> None:
        """Start tracking a freshly issued session."""
        self._sessions[session.user_id] = session

    def current(self, user_id: str) -> Optional[Session]:
        return self._sessions.get(user_id)

    def sign_out(self, user_id: str) -> None:
        """Drop the held session for a user."""
        if self._sessions.pop(user_id, None) is not None:
            logger.info("Cleared session for user %s", user_id)

    def is_refreshing(self, user_id: str) -> bool:
        task = self._refreshing.get(user_id)
        return task is not None and not task.done()

    async def get_valid_session(self, user_id: str) -> Optional[Session]:
        """Return a valid session for ``user_id``, refreshing if needed.

        Concurrent callers share one in-flight refresh. ``None`` means the
        user has to authenticate again.
        """
        session = self._sessions.get(user_id)
        if session is None:
            return None
        if self.is_session_valid(session):
            return session

        task = self._refreshing.get(user_id)
        if task is None or task.done():
            task = asyncio.ensure_future(self._refresh(session))
            self._refreshing[user_id] = task
            task.add_done_callback(lambda done, uid=user_id: self._forget_refresh(uid, done))
        return await asyncio.shield(task)

    def _forget_refresh(self, user_id: str, task: asyncio.Task) -> None:
        if self._refreshing.get(user_id) is task:
            del self._refreshing[user_id]

    def _superseded(self, session: Session) -> bool:
        """True if a sign-out or a new sign-in replaced ``session`` meanwhile."""
        return self._sessions.get(session.user_id) is not session

    def _held_if_valid(self, user_id: str) -> Optional[Session]:
        current = self._sessions.get(user_id)
        return current if self.is_session_valid(current) else None

    def _refresh_failed(self, session: Session) -> Optional[Session]:
        if self._superseded(session):
            return self._held_if_valid(session.user_id)
        self.sign_out(session.user_id)
        return None

    async def _refresh(self, session: Session) -> Optional[Session]:
        logger.info("Session for user %s expired, attempting refresh", session.user_id)
        try:
            refreshed = await self.provider.refresh_session(session.access_token)
        except ProviderError as e:
            logger.warning(
                "Session refresh failed for user %s (%s), signing out",
                session.user_id, e.code,
            )
            return self._refresh_failed(session)
        except Exception as e:
            # Transport failures count as provider errors
            logger.warning(
                "Session refresh failed for user %s (%s: %s), signing out",
                session.user_id, type(e).__name__, e,
            )
            return self._refresh_failed(session)

        if self._superseded(session):
            return self._held_if_valid(session.user_id)

        new_session = Session(
            user_id=session.user_id,
            access_token=refreshed.access_token,
            expires_at=refreshed.expires_at,
        )
        if not self.is_session_valid(new_session):
            logger.warning("Identity provider returned an expired session for user %s", session.user_id)
            self.sign_out(session.user_id)
            return None

        self._sessions[session.user_id] = new_session
        return new_session

    async def revalidate_all(self) -> None:
        """One revalidation tick over every held session.

        Users with a refresh already in flight are skipped.
        """
        for user_id in list(self._sessions):
            if self.is_refreshing(user_id):
                continue
            await self.get_valid_session(user_id)

    async def _revalidation_loop(self) -> None:
        interval = self.revalidate_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            try:
                await self.revalidate_all()
            except Exception:
                logger.exception("Session revalidation tick failed")

    def start(self) -> None:
        """Start background revalidation on the running event loop."""
        if self._revalidation_task is None or self._revalidation_task.done():
            self._revalidation_task = asyncio.ensure_future(self._revalidation_loop())

    async def stop(self) -> None:
        """Stop background revalidation."""
        task = self._revalidation_task
        self._revalidation_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
