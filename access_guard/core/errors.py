"""
Error taxonomy for access and quota control.

Provider-specific failures are mapped into a small set of codes so that
callers only ever deal with ``ErrorCode`` values.
"""

from datetime import timedelta
from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Outcomes surfaced to callers."""
    RATE_LIMITED = "rate_limited"
    SESSION_EXPIRED = "session_expired"
    PLAN_RESTRICTED = "plan_restricted"
    INSUFFICIENT_TOKENS = "insufficient_tokens"
    STORE_UNAVAILABLE = "store_unavailable"
    PROVIDER_ERROR = "provider_error"


class AccessGuardError(Exception):
    """Base class for errors carrying an ``ErrorCode``."""
    def __init__(self, message: str, code: ErrorCode):
        super().__init__(message)
        self.code = code


class RateLimited(AccessGuardError):
    """Raised when an authentication operation is screened out."""
    def __init__(self, key: str, remaining: timedelta):
        minutes = max(1, -(-int(remaining.total_seconds()) // 60))
        super().__init__(
            f"Too many attempts. Please try again in {minutes} minute(s).",
            ErrorCode.RATE_LIMITED,
        )
        self.key = key
        self.remaining = remaining


class StoreUnavailable(AccessGuardError):
    """Raised by stores when the backing database cannot be used."""
    def __init__(self, message: str):
        super().__init__(message, ErrorCode.STORE_UNAVAILABLE)


class AuthenticationError(AccessGuardError):
    """Identity provider failure mapped to a user-presentable message."""
    def __init__(self, message: str, provider_code: Optional[str] = None):
        super().__init__(message, ErrorCode.PROVIDER_ERROR)
        self.provider_code = provider_code


class ProviderError(Exception):
    """Raised by identity providers with their own error code."""
    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code


PROVIDER_MESSAGES = {
    "auth/too-many-requests": "Too many attempts. Please try again later.",
    "auth/user-disabled": "This account has been disabled. Please contact support.",
    "auth/user-not-found": "No account found with this email address.",
    "auth/wrong-password": "Incorrect password. Please try again.",
    "auth/invalid-credential": "Incorrect email or password. Please try again.",
    "auth/email-already-in-use": "An account with this email already exists.",
    "auth/weak-password": "Password should be at least 6 characters long.",
    "auth/invalid-email": "Please enter a valid email address.",
    "auth/network-request-failed": "Network error. Please check your connection and try again.",
    "auth/popup-closed-by-user": "Sign-in was cancelled. Please try again.",
    "auth/unauthorized-domain": "This domain is not authorized for authentication. Please contact support.",
    "auth/invalid-refresh-token": "Your session has expired. Please sign in again.",
    "auth/session-not-found": "Your session has expired. Please sign in again.",
}

DEFAULT_PROVIDER_MESSAGE = "An unexpected error occurred. Please try again."


def map_provider_error(error: ProviderError) -> AuthenticationError:
    """Translate a provider error into the internal taxonomy."""
    message = PROVIDER_MESSAGES.get(error.code, DEFAULT_PROVIDER_MESSAGE)
    return AuthenticationError(message, provider_code=error.code)
