"""
Attempt rate limiting for authentication operations.

Counts attempts per operation key inside a fixed window. State is held in
process memory, so a deployment running several instances undercounts
attempts unless each instance sees all traffic for a key.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from .clock import Clock, utc_now

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(minutes=15)
DEFAULT_MAX_ATTEMPTS = 5


@dataclass
class RateLimitRecord:
    """Attempt counter for one key."""
    attempt_count: int
    window_reset_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.window_reset_at


def make_key(operation: str, identifier: str) -> str:
    """Build a rate-limit key from an operation and a stable identifier.

    The identifier is normalized (stripped, lower-cased) so that
    ``"A@B.com "`` and ``"a@b.com"`` share one counter.

    Raises:
        ValueError: If either part is empty
    """
    if not operation or not operation.strip():
        raise ValueError("operation is required and cannot be empty")
    if not identifier or not identifier.strip():
        raise ValueError("identifier is required and cannot be empty")
    return f"{operation.strip().lower()}:{identifier.strip().lower()}"


class RateLimiter:
    """Fixed-window attempt counter keyed by operation identifier.

    Construct one instance at process start and share it with every caller.
    """

    def __init__(
        self,
        window: timedelta = DEFAULT_WINDOW,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Clock = utc_now,
    ):
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.window = window
        self.max_attempts = max_attempts
        self._clock = clock
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    def _live_record(self, key: str, now: datetime) -> Optional[RateLimitRecord]:
        record = self._records.get(key)
        if record is None or record.is_expired(now):
            return None
        return record

    def is_rate_limited(self, key: str) -> bool:
        """Record an attempt for ``key`` and report whether it is limited.

        The first attempt in a fresh window opens the window. Each later
        attempt increments the count; once it exceeds ``max_attempts`` the
        key stays limited until the window elapses.
        """
        now = self._clock()
        with self._lock:
            record = self._live_record(key, now)
            if record is None:
                self._records[key] = RateLimitRecord(
                    attempt_count=1,
                    window_reset_at=now + self.window,
                )
                return False

            if record.attempt_count <= self.max_attempts:
                record.attempt_count += 1

            limited = record.attempt_count > self.max_attempts

        if limited:
            logger.warning("Rate limit reached for %s", key)
        return limited

    def get_remaining_time(self, key: str) -> timedelta:
        """Time until the current window for ``key`` resets (zero if none)."""
        now = self._clock()
        with self._lock:
            record = self._live_record(key, now)
            if record is None:
                return timedelta(0)
            return max(timedelta(0), record.window_reset_at - now)

    def remaining_attempts(self, key: str) -> int:
        """Attempts still allowed in the current window."""
        now = self._clock()
        with self._lock:
            record = self._live_record(key, now)
            if record is None:
                return self.max_attempts
            return max(0, self.max_attempts - record.attempt_count)

    def reset(self, key: str) -> None:
        """Forget attempts for ``key``, e.g. after a successful sign-in."""
        with self._lock:
            self._records.pop(key, None)
