"""
Core modules for Access Guard.

This package contains rate limiting, session validation, the token ledger,
subscription management and feature authorization.
"""
