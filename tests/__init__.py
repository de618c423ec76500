"""
Chorus Test Suite.

This package contains:
- unit/: Unit tests (SQLite in temp dirs, in-memory broker, fake transports)
- integration/: Integration tests (aiohttp test server driven by the SDK)
"""
