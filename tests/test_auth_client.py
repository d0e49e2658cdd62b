"""
Tests for the guarded authentication client.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from access_guard.core.errors import AuthenticationError, ErrorCode, ProviderError, RateLimited
from access_guard.core.rate_limiter import RateLimiter
from access_guard.core.session import Credentials, Session, SessionValidator
from access_guard.sdk import GuardedAuthClient


@pytest.fixture
def provider(clock):
    provider = AsyncMock()
    provider.sign_in.return_value = Session("user-1", "tok-1", clock.now + timedelta(hours=1))
    provider.sign_up.return_value = Session("user-9", "tok-9", clock.now + timedelta(hours=1))
    return provider


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


@pytest.fixture
def client(provider, limiter, clock):
    return GuardedAuthClient(provider, limiter, SessionValidator(provider, clock=clock))


class TestConstruction:

    def test_provider_required(self, limiter):
        with pytest.raises(ValueError, match="provider is required"):
            GuardedAuthClient(None, limiter)

    def test_rate_limiter_required(self, provider):
        with pytest.raises(ValueError, match="rate_limiter is required"):
            GuardedAuthClient(provider, None)


class TestSignIn:

    @pytest.mark.asyncio
    async def test_success_holds_session(self, client, provider):
        session = await client.sign_in(" A@B.com ", "secret")

        assert session.user_id == "user-1"
        assert client.sessions.current("user-1") == session
        provider.sign_in.assert_awaited_once_with(Credentials(email="A@B.com", password="secret"))

    @pytest.mark.asyncio
    async def test_success_resets_attempts(self, client, limiter):
        await client.sign_in("a@b.com", "secret")
        assert limiter.remaining_attempts("signin:a@b.com") == limiter.max_attempts

    @pytest.mark.asyncio
    async def test_sixth_failed_attempt_is_rate_limited(self, client, provider):
        """Five failures reach the provider, the sixth is screened out."""
        provider.sign_in.side_effect = ProviderError("auth/wrong-password")

        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await client.sign_in("a@b.com", "wrong")

        with pytest.raises(RateLimited) as excinfo:
            await client.sign_in("a@b.com", "wrong")

        assert excinfo.value.code == ErrorCode.RATE_LIMITED
        assert excinfo.value.key == "signin:a@b.com"
        assert "15 minute(s)" in str(excinfo.value)
        assert provider.sign_in.await_count == 5

    @pytest.mark.asyncio
    async def test_attempts_allowed_again_after_window(self, client, provider, clock):
        provider.sign_in.side_effect = ProviderError("auth/wrong-password")
        for _ in range(6):
            with pytest.raises((AuthenticationError, RateLimited)):
                await client.sign_in("a@b.com", "wrong")

        clock.advance(minutes=16)
        provider.sign_in.side_effect = None

        session = await client.sign_in("a@b.com", "right")
        assert session.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_limit_is_per_email(self, client, provider):
        provider.sign_in.side_effect = ProviderError("auth/wrong-password")
        for _ in range(6):
            with pytest.raises((AuthenticationError, RateLimited)):
                await client.sign_in("a@b.com", "wrong")

        with pytest.raises(AuthenticationError):
            await client.sign_in("c@d.com", "wrong")

    @pytest.mark.asyncio
    async def test_provider_error_is_mapped(self, client, provider):
        provider.sign_in.side_effect = ProviderError("auth/user-disabled")

        with pytest.raises(AuthenticationError) as excinfo:
            await client.sign_in("a@b.com", "secret")

        assert excinfo.value.code == ErrorCode.PROVIDER_ERROR
        assert excinfo.value.provider_code == "auth/user-disabled"
        assert str(excinfo.value) == "This account has been disabled. Please contact support."
        assert isinstance(excinfo.value.__cause__, ProviderError)


class TestOtherOperations:

    @pytest.mark.asyncio
    async def test_sign_up(self, client, provider):
        session = await client.sign_up("new@b.com", "secret")
        assert session.user_id == "user-9"
        assert client.sessions.current("user-9") == session

    @pytest.mark.asyncio
    async def test_sign_up_error(self, client, provider):
        provider.sign_up.side_effect = ProviderError("auth/email-already-in-use")
        with pytest.raises(AuthenticationError, match="already exists"):
            await client.sign_up("a@b.com", "secret")

    @pytest.mark.asyncio
    async def test_password_reset_counts_every_attempt(self, client, provider):
        for _ in range(5):
            await client.request_password_reset("a@b.com")

        with pytest.raises(RateLimited):
            await client.request_password_reset("a@b.com")
        assert provider.send_password_reset.await_count == 5

    @pytest.mark.asyncio
    async def test_operations_have_separate_counters(self, client, limiter):
        for _ in range(5):
            await client.request_password_reset("a@b.com")
        await client.sign_in("a@b.com", "secret")

    @pytest.mark.asyncio
    async def test_oauth_sign_in(self, client, provider, limiter):
        session = await client.sign_in_with_oauth("google", "a@b.com")

        assert session.user_id == "user-1"
        provider.sign_in.assert_awaited_once_with(Credentials(email="a@b.com", oauth_provider="google"))

    @pytest.mark.asyncio
    async def test_oauth_cancelled(self, client, provider):
        provider.sign_in.side_effect = ProviderError("auth/popup-closed-by-user")
        with pytest.raises(AuthenticationError, match="cancelled"):
            await client.sign_in_with_oauth("google", "a@b.com")

    @pytest.mark.asyncio
    async def test_sign_out(self, client):
        await client.sign_in("a@b.com", "secret")
        client.sign_out("user-1")
        assert client.sessions.current("user-1") is None
