"""
Unit tests for the authentication rate limiter.

Tests window opening, the attempt limit, window expiry and key handling.
"""

from datetime import timedelta

import pytest

from access_guard.core.rate_limiter import RateLimiter, RateLimitRecord, make_key


class TestMakeKey:
    """Test rate-limit key construction."""

    def test_operation_and_identifier_are_joined(self):
        assert make_key("signin", "a@b.com") == "signin:a@b.com"

    def test_identifier_is_normalized(self):
        """Case and surrounding whitespace do not create separate counters."""
        assert make_key("signin", "  A@B.com ") == make_key("signin", "a@b.com")

    @pytest.mark.parametrize("operation,identifier", [
        ("", "a@b.com"),
        ("signin", ""),
        ("signin", "   "),
    ])
    def test_empty_parts_rejected(self, operation, identifier):
        with pytest.raises(ValueError):
            make_key(operation, identifier)


class TestRateLimitRecord:

    def test_expiry_is_strictly_after_reset(self, clock):
        record = RateLimitRecord(attempt_count=1, window_reset_at=clock.now)
        assert not record.is_expired(clock.now)
        assert record.is_expired(clock.now + timedelta(microseconds=1))


class TestRateLimiter:
    """Test attempt counting within a window."""

    def test_first_attempt_opens_window(self, clock):
        limiter = RateLimiter(clock=clock)
        assert limiter.is_rate_limited("signin:a@b.com") is False
        assert limiter.get_remaining_time("signin:a@b.com") == timedelta(minutes=15)

    def test_sixth_attempt_is_limited(self, clock):
        """Five attempts pass, the sixth within the window is refused."""
        limiter = RateLimiter(clock=clock)
        key = "signin:a@b.com"
        results = [limiter.is_rate_limited(key) for _ in range(6)]
        assert results == [False, False, False, False, False, True]

    def test_stays_limited_until_window_elapses(self, clock):
        limiter = RateLimiter(clock=clock)
        key = "signin:a@b.com"
        for _ in range(6):
            limiter.is_rate_limited(key)

        clock.advance(minutes=10)
        assert limiter.is_rate_limited(key) is True
        assert limiter.get_remaining_time(key) == timedelta(minutes=5)

    def test_window_elapse_resets_counter(self, clock):
        limiter = RateLimiter(clock=clock)
        key = "signin:a@b.com"
        for _ in range(6):
            limiter.is_rate_limited(key)

        clock.advance(minutes=15, seconds=1)
        assert limiter.is_rate_limited(key) is False
        assert limiter.remaining_attempts(key) == 4

    def test_count_stops_growing_once_limited(self, clock):
        limiter = RateLimiter(max_attempts=2, clock=clock)
        key = "reset:a@b.com"
        for _ in range(10):
            limiter.is_rate_limited(key)
        assert limiter._records[key].attempt_count == 3

    def test_keys_are_independent(self, clock):
        limiter = RateLimiter(max_attempts=1, clock=clock)
        limiter.is_rate_limited("signin:a@b.com")
        assert limiter.is_rate_limited("signin:a@b.com") is True
        assert limiter.is_rate_limited("signin:c@d.com") is False
        assert limiter.is_rate_limited("signup:a@b.com") is False

    def test_remaining_time_without_record_is_zero(self, clock):
        limiter = RateLimiter(clock=clock)
        assert limiter.get_remaining_time("signin:nobody") == timedelta(0)

    def test_remaining_attempts(self, clock):
        limiter = RateLimiter(max_attempts=5, clock=clock)
        key = "signin:a@b.com"
        assert limiter.remaining_attempts(key) == 5
        limiter.is_rate_limited(key)
        limiter.is_rate_limited(key)
        assert limiter.remaining_attempts(key) == 3

    def test_reset_clears_key(self, clock):
        limiter = RateLimiter(max_attempts=1, clock=clock)
        key = "signin:a@b.com"
        limiter.is_rate_limited(key)
        limiter.is_rate_limited(key)
        limiter.reset(key)
        assert limiter.is_rate_limited(key) is False

    def test_limit_reached_is_logged(self, clock, caplog):
        limiter = RateLimiter(max_attempts=1, clock=clock)
        limiter.is_rate_limited("signin:a@b.com")
        with caplog.at_level("WARNING", logger="access_guard.core.rate_limiter"):
            limiter.is_rate_limited("signin:a@b.com")
        assert "Rate limit reached for signin:a@b.com" in caplog.text

    @pytest.mark.parametrize("kwargs", [
        {"window": timedelta(0)},
        {"max_attempts": 0},
    ])
    def test_invalid_settings_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RateLimiter(**kwargs)
