"""
Local on-device storage for the Ground sync core.

This module provides:
- LocalStore: SQLite store for entities, the mutation queue and basemap state
- ChangeNotifier: publish/subscribe wake-ups for streaming reads
- Merge functions replaying pending mutations on entity snapshots

Invariants:
    - Every write is a single SQLite transaction
    - Streaming reads emit the current snapshot first, then one per change
"""

from .local_store import LocalStore
from .merge import (
    apply_feature_mutations,
    apply_observation_mutations,
    apply_response_deltas,
)
from .notifier import ChangeNotifier, Subscription

__all__ = [
    "LocalStore",
    "ChangeNotifier",
    "Subscription",
    "apply_feature_mutations",
    "apply_observation_mutations",
    "apply_response_deltas",
]
