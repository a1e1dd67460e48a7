"""
Publish/subscribe change notification for streaming store reads.

Writers publish the names of the tables they changed after committing.
Each subscriber holds a coalescing flag: any number of publishes between
two reads collapse into a single wake-up, so a slow reader never blocks a
writer and never sees a backlog of stale snapshots.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import FrozenSet, Set

logger = logging.getLogger(__name__)


class Subscription:
    """A registration for change notifications on a set of tables."""

    def __init__(self, notifier: ChangeNotifier, tables: FrozenSet[str]) -> None:
        self.tables = tables
        self._notifier = notifier
        self._loop = asyncio.get_running_loop()
        self._changed = asyncio.Event()
        self._closed = False

    def _notify(self) -> None:
        if self._closed or self._loop.is_closed():
            return
        # Writers may publish from worker threads.
        self._loop.call_soon_threadsafe(self._changed.set)

    async def wait(self) -> None:
        """Wait until a subscribed table changes, then reset the flag."""
        await self._changed.wait()
        self._changed.clear()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._notifier._unsubscribe(self)


class ChangeNotifier:
    """Fan-out of table change events to live subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: Set[Subscription] = set()
        self._lock = threading.Lock()

    def subscribe(self, *tables: str) -> Subscription:
        """Register interest in one or more tables.

        Must be called from a running event loop. Callers close the
        subscription when done.
        """
        subscription = Subscription(self, frozenset(tables))
        with self._lock:
            self._subscriptions.add(subscription)
        return subscription

    def publish(self, *tables: str) -> None:
        """Notify subscribers of the given tables."""
        changed = set(tables)
        with self._lock:
            targets = [s for s in self._subscriptions if s.tables & changed]
        for subscription in targets:
            subscription._notify()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.discard(subscription)
