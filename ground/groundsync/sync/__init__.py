"""
Synchronization between the local store and the remote store.

This module provides:
- WorkScheduler: unique named background work with retry and backoff
- LocalMutationSyncWorker: drains the pending mutation queue
- SyncEngine: local apply + scheduling, remote pull and merge
"""

from .scheduler import (
    BackoffPolicy,
    ConnectivityMonitor,
    ExistingWorkPolicy,
    WorkContext,
    WorkResult,
    WorkScheduler,
)
from .sync_engine import SYNC_WORK_NAME, LocalMutationSyncWorker, SyncEngine

__all__ = [
    "BackoffPolicy",
    "ConnectivityMonitor",
    "ExistingWorkPolicy",
    "WorkContext",
    "WorkResult",
    "WorkScheduler",
    "SYNC_WORK_NAME",
    "LocalMutationSyncWorker",
    "SyncEngine",
]
