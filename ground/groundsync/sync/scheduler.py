"""
Background work scheduling with retry, backoff and a network precondition.

The scheduler runs named units of work as asyncio tasks. At most one run
of a given name is active at a time; callers choose what happens when work
with the same name is already scheduled.

Invariants:
    - One active task per unique work name
    - Work that needs the network does not start while disconnected
    - A RETRY result or an exception is retried with exponential backoff,
      up to max_attempts, then reported as FAILURE
    - Exceptions from work are logged and never escape the scheduler

How to change safely:
    - Keep work functions idempotent; any attempt may be repeated
    - Test policies with work that blocks until released
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class WorkResult(Enum):
    SUCCESS = "success"
    RETRY = "retry"
    FAILURE = "failure"


class ExistingWorkPolicy(Enum):
    """What to do when work with the same name is already scheduled.

    KEEP leaves the existing work alone. REPLACE cancels it and starts the
    new work. APPEND runs the new work once the existing run finishes.
    """

    KEEP = "keep"
    REPLACE = "replace"
    APPEND = "append"


@dataclass(frozen=True)
class WorkContext:
    """Information about the current attempt, passed to the work function.

    Attributes:
        name: Unique work name
        attempt: 1-based attempt number
        max_attempts: Attempts allowed before the work is failed
    """

    name: str
    attempt: int
    max_attempts: int

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


WorkFunction = Callable[[WorkContext], Awaitable[WorkResult]]


class ConnectivityMonitor:
    """Tracks whether the device currently has network connectivity."""

    def __init__(self, connected: bool = True) -> None:
        self._connected = asyncio.Event()
        if connected:
            self._connected.set()

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def set_connected(self, connected: bool) -> None:
        if connected == self.is_connected:
            return
        if connected:
            self._connected.set()
        else:
            self._connected.clear()
        logger.info("Connectivity changed", extra={"connected": connected})

    async def wait_until_connected(self) -> None:
        await self._connected.wait()


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff between attempts.

    Attributes:
        initial_delay_ms: Delay before the second attempt
        multiplier: Growth factor per attempt
        max_delay_ms: Upper bound on any single delay
    """

    initial_delay_ms: int = 10_000
    multiplier: float = 2.0
    max_delay_ms: int = 5 * 60 * 60 * 1000

    def delay_for(self, attempt: int) -> float:
        """Delay in milliseconds after the given failed attempt (1-based)."""
        if attempt < 1:
            return 0.0
        delay = self.initial_delay_ms * (self.multiplier ** (attempt - 1))
        return float(min(delay, self.max_delay_ms))


class _ScheduledWork:
    def __init__(self, name: str, fn: WorkFunction, require_network: bool) -> None:
        self.name = name
        self.fn = fn
        self.require_network = require_network
        self.next_fn: Optional[WorkFunction] = None
        self.task: Optional[asyncio.Task] = None


class WorkScheduler:
    """Runs unique named background work.

    Example:
        >>> scheduler = WorkScheduler(ConnectivityMonitor(), BackoffPolicy())
        >>> scheduler.enqueue_unique_work("sync", worker.do_work, ExistingWorkPolicy.APPEND)
        >>> await scheduler.join()
        >>> await scheduler.shutdown()
    """

    def __init__(
        self,
        connectivity: Optional[ConnectivityMonitor] = None,
        backoff: Optional[BackoffPolicy] = None,
        max_attempts: int = 10,
        require_network: bool = True,
    ) -> None:
        """Initialize the scheduler.

        Args:
            connectivity: Network state used for the network precondition
            backoff: Delay policy between attempts
            max_attempts: Attempts per run before giving up
            require_network: Default network precondition for new work
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.connectivity = connectivity or ConnectivityMonitor()
        self.backoff = backoff or BackoffPolicy()
        self.max_attempts = max_attempts
        self.require_network = require_network
        self._work: Dict[str, _ScheduledWork] = {}
        self._results: Dict[str, WorkResult] = {}
        self._closed = False

    def enqueue_unique_work(
        self,
        name: str,
        fn: WorkFunction,
        policy: ExistingWorkPolicy = ExistingWorkPolicy.KEEP,
        require_network: Optional[bool] = None,
    ) -> asyncio.Task:
        """Schedule work under a unique name.

        Args:
            name: Unique work name
            fn: Coroutine function taking a WorkContext
            policy: Behaviour when work with this name is already scheduled
            require_network: Override the default network precondition

        Returns:
            Task running the work; resolves to the final WorkResult
        """
        if self._closed:
            raise RuntimeError("Scheduler has been shut down")

        needs_network = self.require_network if require_network is None else require_network
        existing = self._work.get(name)

        if existing is not None and existing.task is not None and not existing.task.done():
            if policy == ExistingWorkPolicy.KEEP:
                logger.debug("Work already scheduled, keeping", extra={"work": name})
                return existing.task
            if policy == ExistingWorkPolicy.APPEND:
                logger.debug("Work already scheduled, appending", extra={"work": name})
                existing.next_fn = fn
                return existing.task
            logger.debug("Replacing scheduled work", extra={"work": name})
            existing.task.cancel()

        work = _ScheduledWork(name, fn, needs_network)
        self._work[name] = work
        work.task = asyncio.create_task(self._run(work), name=f"work:{name}")
        return work.task

    def is_scheduled(self, name: str) -> bool:
        work = self._work.get(name)
        return work is not None and work.task is not None and not work.task.done()

    def last_result(self, name: str) -> Optional[WorkResult]:
        """Result of the most recent completed run of ``name``."""
        return self._results.get(name)

    async def join(self, name: Optional[str] = None) -> None:
        """Wait until the named work (or all work) has finished."""
        while True:
            if name is not None:
                work = self._work.get(name)
                tasks = [work.task] if work and work.task else []
            else:
                tasks = [w.task for w in self._work.values() if w.task is not None]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all scheduled work and wait for it to stop."""
        self._closed = True
        tasks = [w.task for w in self._work.values() if w.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._work.clear()
        logger.info("Work scheduler shut down")

    async def _run(self, work: _ScheduledWork) -> WorkResult:
        result = WorkResult.FAILURE
        try:
            while True:
                result = await self._run_with_retries(work.name, work.fn, work.require_network)
                self._results[work.name] = result
                if work.next_fn is None:
                    return result
                work.fn, work.next_fn = work.next_fn, None
        except asyncio.CancelledError:
            logger.info("Work cancelled", extra={"work": work.name})
            raise
        finally:
            if self._work.get(work.name) is work:
                del self._work[work.name]

    async def _run_with_retries(
        self, name: str, fn: WorkFunction, require_network: bool
    ) -> WorkResult:
        attempt = 0
        while True:
            attempt += 1
            if require_network and not self.connectivity.is_connected:
                logger.info("Waiting for network", extra={"work": name})
                await self.connectivity.wait_until_connected()

            ctx = WorkContext(name=name, attempt=attempt, max_attempts=self.max_attempts)
            try:
                result = await fn(ctx)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Work raised: {e}",
                    exc_info=True,
                    extra={"work": name, "attempt": attempt},
                )
                result = WorkResult.RETRY

            if result != WorkResult.RETRY:
                logger.debug(
                    "Work finished",
                    extra={"work": name, "attempt": attempt, "result": result.value},
                )
                return result

            if ctx.is_last_attempt:
                logger.warning(
                    "Work failed after max attempts",
                    extra={"work": name, "attempts": attempt},
                )
                return WorkResult.FAILURE

            delay_ms = self.backoff.delay_for(attempt)
            logger.info(
                "Retrying work",
                extra={"work": name, "attempt": attempt, "delay_ms": delay_ms},
            )
            await asyncio.sleep(delay_ms / 1000.0)
