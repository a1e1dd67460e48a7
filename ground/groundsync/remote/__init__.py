"""
Remote data store boundary for the Ground sync core.

This module provides a pluggable remote backend interface supporting:
- HTTP/JSON document API (production)
- In-memory (for testing)

Invariants:
    - Pushes fail with exactly one of TransientNetworkFailure or RemoteRejection
    - CREATE and DELETE are idempotent on every backend

How to change safely:
    - New backends must implement the RemoteDataStore protocol
    - Run the sync engine integration tests against every backend
"""

from .base import (
    RemoteChange,
    RemoteChangeType,
    RemoteDataStore,
    create_remote_store,
)
from .http import HttpRemoteDataStore
from .memory import InMemoryRemoteDataStore

__all__ = [
    # Protocol and types
    "RemoteDataStore",
    "RemoteChange",
    "RemoteChangeType",
    # Factory
    "create_remote_store",
    # Implementations
    "HttpRemoteDataStore",
    "InMemoryRemoteDataStore",
]
