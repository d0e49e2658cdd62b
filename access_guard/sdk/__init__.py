"""
SDK for Access Guard.

Provides the guarded authentication entry points.
"""

from .auth_client import GuardedAuthClient

__all__ = ["GuardedAuthClient"]
