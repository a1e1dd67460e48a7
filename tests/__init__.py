"""
Ground sync test suite.

This package contains:
- unit/: Unit tests (no network, temporary SQLite files)
- integration/: Sync engine and basemap pipeline against in-memory and mocked remotes
"""
