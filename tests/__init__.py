"""
ChanDB Test Suite.

This package contains:
- unit/: Unit tests (in-memory platform, mock HTTP transport)
- integration/: Store-level scenarios against the in-memory platform
"""
