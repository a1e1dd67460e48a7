"""
Ground sync core - offline-first data collection storage and synchronization.

This package implements the on-device half of the Ground field data
collection system:
- Features and Observations as the core data model
- A pending-mutation queue as the source of truth for unsynced work
- SQLite as the local store (optimistic apply + enqueue, merge of remote state)
- Background workers that push mutations and download offline basemap tiles

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌──────────────────┐
    │  User edit  │────▶│  SyncEngine  │────▶│   Local Store    │
    │ (Mutation)  │     │   .apply()   │     │ apply + enqueue  │
    └─────────────┘     └──────┬───────┘     └────────┬─────────┘
                               │ schedule             │ pending queue
                               ▼                      ▼
                        ┌──────────────┐     ┌──────────────────┐
                        │WorkScheduler │────▶│ LocalMutation    │
                        │ (backoff,    │     │ SyncWorker       │
                        │  network)    │     │ push + finalize  │
                        └──────┬───────┘     └────────┬─────────┘
                               │                      │
                               ▼                      ▼
                        ┌──────────────┐     ┌──────────────────┐
                        │ TileSource   │     │  Remote Store    │
                        │ Download     │     │  (documents)     │
                        │ Worker       │     └──────────────────┘
                        └──────────────┘

Invariants:
    - The mutation queue is the single source of truth for unsynced work
    - A mutation leaves the queue only after confirmed remote delivery
    - Mutations for one entity are applied and delivered in client-timestamp order
    - Objects returned by the store are immutable snapshots

How to change safely:
    - New mutation kinds must be handled at every dispatch site (store apply,
      store finalize, remote push)
    - Schema changes to the local database must keep existing queues readable
    - Test merge changes with out-of-order and concurrent remote snapshots
"""

from ._version import __version__

__all__ = ["__version__"]
