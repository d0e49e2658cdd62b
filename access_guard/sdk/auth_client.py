"""
Guarded identity provider client.

Screens every authentication entry point with the rate limiter before the
request reaches the identity provider, and maps provider failures into the
internal error taxonomy.
"""

import logging
from typing import Optional

from ..core.errors import ProviderError, RateLimited, map_provider_error
from ..core.rate_limiter import RateLimiter, make_key
from ..core.session import Credentials, IdentityProvider, Session, SessionValidator

logger = logging.getLogger(__name__)

SIGN_IN = "signin"
SIGN_UP = "signup"
PASSWORD_RESET = "reset"
OAUTH = "oauth"


class GuardedAuthClient:
    """Identity provider wrapper with attempt limiting.

    Keys are derived from the operation and the normalized identifier only,
    so repeated attempts for the same account always share one counter.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        rate_limiter: RateLimiter,
        sessions: Optional[SessionValidator] = None,
    ):
        """Initialize guarded auth client.

        Args:
            provider: Identity provider performing the real work (required)
            rate_limiter: Process-wide rate limiter instance (required)
            sessions: Session validator that receives issued sessions

        Raises:
            ValueError: If provider or rate_limiter is missing
        """
        if provider is None:
            raise ValueError("provider is required")
        if rate_limiter is None:
            raise ValueError("rate_limiter is required")
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.sessions = sessions

    def _screen(self, operation: str, identifier: str) -> str:
        key = make_key(operation, identifier)
        if self.rate_limiter.is_rate_limited(key):
            raise RateLimited(key, self.rate_limiter.get_remaining_time(key))
        return key

    def _issued(self, session: Session) -> Session:
        if self.sessions is not None:
            self.sessions.hold(session)
        return session

    async def sign_in(self, email: str, password: str) -> Session:
        """Authenticate with email and password.

        Raises:
            RateLimited: Too many attempts for this email
            AuthenticationError: The provider refused the credentials
        """
        key = self._screen(SIGN_IN, email)
        try:
            session = await self.provider.sign_in(Credentials(email=email.strip(), password=password))
        except ProviderError as e:
            logger.info("Sign-in failed for %s: %s", key, e.code)
            raise map_provider_error(e) from e

        self.rate_limiter.reset(key)
        logger.info("User %s signed in", session.user_id)
        return self._issued(session)

    async def sign_up(self, email: str, password: str) -> Session:
        key = self._screen(SIGN_UP, email)
        try:
            session = await self.provider.sign_up(Credentials(email=email.strip(), password=password))
        except ProviderError as e:
            logger.info("Sign-up failed for %s: %s", key, e.code)
            raise map_provider_error(e) from e

        logger.info("User %s signed up", session.user_id)
        return self._issued(session)

    async def request_password_reset(self, email: str) -> None:
        """Ask the provider to send a password reset message.

        Attempts count against the limit whether or not they succeed.
        """
        key = self._screen(PASSWORD_RESET, email)
        try:
            await self.provider.send_password_reset(email.strip())
        except ProviderError as e:
            logger.info("Password reset failed for %s: %s", key, e.code)
            raise map_provider_error(e) from e

    async def sign_in_with_oauth(self, oauth_provider: str, identifier: str) -> Session:
        """Authenticate through an OAuth provider (e.g. ``google``)."""
        key = self._screen(f"{OAUTH}:{oauth_provider}", identifier)
        try:
            session = await self.provider.sign_in(
                Credentials(email=identifier.strip(), oauth_provider=oauth_provider)
            )
        except ProviderError as e:
            logger.info("OAuth sign-in failed for %s: %s", key, e.code)
            raise map_provider_error(e) from e

        self.rate_limiter.reset(key)
        return self._issued(session)

    def sign_out(self, user_id: str) -> None:
        if self.sessions is not None:
            self.sessions.sign_out(user_id)
