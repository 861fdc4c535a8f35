"""
kvmap Test Suite.

This package contains:
- unit/: Unit tests (pure mapping code, in-memory store)
- integration/: Integration tests (adapter, expiration, partial updates on the in-memory store)
"""
