"""
Ground sync client - Main entry point.

This module wires the sync core together:
- Local SQLite store
- Remote data store (HTTP or in-memory)
- Work scheduler with connectivity precondition
- Sync engine (push queued mutations, pull remote changes)
- Offline basemap repository and tile download worker

Usage:
    python -m ground.groundsync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Work queued before a restart is resumed on start
    - Graceful shutdown cancels background work; queued mutations stay queued

How to change safely:
    - Add new components to Client.start and Client.stop symmetrically
    - Test shutdown while a drain is in flight
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import json_log_formatter

from .basemap import (
    FixedNameGeocoder,
    Geocoder,
    NominatimGeocoder,
    OfflineBaseMapRepository,
    TileSourceDownloadWorker,
)
from .config import ClientConfig
from .errors import TransientNetworkFailure
from .local import LocalStore
from .model.entities import User
from .remote import RemoteDataStore, create_remote_store
from .sync import BackoffPolicy, ConnectivityMonitor, SyncEngine, WorkScheduler

logger = logging.getLogger(__name__)


def setup_logging(config: ClientConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Client configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class Client:
    """Ground sync client orchestrator.

    Attributes:
        config: Client configuration
        local_store: On-device store
        remote_store: Remote data store
        connectivity: Network state shared by background work
        scheduler: Background work scheduler
        sync_engine: Push/pull coordination
        basemaps: Offline basemap repository

    Example:
        >>> client = Client()
        >>> await client.start()
        >>> await client.sync_engine.apply(mutation)
        >>> await client.stop()
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        remote_store: Optional[RemoteDataStore] = None,
        geocoder: Optional[Geocoder] = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Optional configuration (loaded from env if not provided)
            remote_store: Optional remote store overriding the configured backend
            geocoder: Optional geocoder overriding the configured one
        """
        self.config = config or ClientConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

        storage = self.config.storage
        self.local_store = LocalStore(
            data_dir=storage.data_dir,
            db_name=storage.db_name,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        self.remote_store = remote_store or create_remote_store(self.config.remote)

        work = self.config.work
        self.connectivity = ConnectivityMonitor()
        self.scheduler = WorkScheduler(
            connectivity=self.connectivity,
            backoff=BackoffPolicy(
                initial_delay_ms=work.backoff_initial_ms,
                multiplier=work.backoff_multiplier,
                max_delay_ms=work.backoff_max_ms,
            ),
            max_attempts=work.max_attempts,
            require_network=work.require_network,
        )
        self.sync_engine = SyncEngine(self.local_store, self.remote_store, self.scheduler)

        basemap = self.config.basemap
        if geocoder is None:
            geocoder = (
                NominatimGeocoder(basemap.geocoder_url, user_agent=basemap.geocoder_user_agent)
                if basemap.geocoder_url
                else FixedNameGeocoder()
            )
        self.download_worker = TileSourceDownloadWorker(
            self.local_store,
            tiles_dir=storage.resolved_tiles_dir,
            timeout_seconds=basemap.download_timeout_seconds,
            chunk_size=basemap.chunk_size,
        )
        self.basemaps = OfflineBaseMapRepository(
            self.local_store,
            self.scheduler,
            self.download_worker,
            geocoder,
        )

    async def start(self) -> None:
        """Initialize storage and resume background work."""
        if self._running:
            logger.warning("Client already running")
            return

        logger.info("Starting Ground sync client")
        self.config.log_config()

        Path(self.config.storage.resolved_tiles_dir).mkdir(parents=True, exist_ok=True)
        await self.local_store.initialize()
        await self.remote_store.connect()

        if self.config.user_id and await self.local_store.get_user(self.config.user_id) is None:
            await self.local_store.insert_or_update_user(
                User(id=self.config.user_id, email="", display_name=self.config.user_id)
            )

        await self.sync_engine.resume()
        await self.basemaps.resume()

        if self.config.project_id:
            self._tasks.append(
                asyncio.create_task(self._follow_project(self.config.project_id))
            )

        self._running = True
        logger.info("Ground sync client started")

    async def _follow_project(self, project_id: str) -> None:
        """Pull the project and follow its changes, reconnecting after transient failures."""
        attempt = 0
        while True:
            await self.connectivity.wait_until_connected()
            try:
                await self.sync_engine.pull_project(project_id)
                attempt = 0
                await self.sync_engine.stream_remote_changes(project_id)
                return
            except asyncio.CancelledError:
                raise
            except TransientNetworkFailure as e:
                attempt += 1
                delay_ms = self.scheduler.backoff.delay_for(attempt)
                logger.warning(
                    "Remote project unreachable, will retry",
                    extra={
                        "project_id": project_id,
                        "attempt": attempt,
                        "delay_ms": delay_ms,
                        "error": e.message,
                    },
                )
                await asyncio.sleep(delay_ms / 1000)
            except Exception as e:
                logger.error(f"Remote change stream stopped: {e}", exc_info=True)
                return

    async def run(self) -> None:
        """Start and wait until shutdown is requested."""
        await self.start()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the client gracefully."""
        if not self._running:
            return

        logger.info("Stopping Ground sync client")

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.scheduler.shutdown()
        await self.remote_store.close()

        self._running = False
        logger.info("Ground sync client stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ClientConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    client = Client(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        client.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(client.run())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(client.stop())
        loop.close()


if __name__ == "__main__":
    main()
