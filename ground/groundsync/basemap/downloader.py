"""
Background download of offline basemap tile archives.

The worker downloads every tile source that is PENDING (or left
IN_PROGRESS by an interrupted run) into the tiles directory, then settles
the state of every offline area that was waiting on those tiles.

Invariants:
    - A tile is DOWNLOADED only after its archive was fully written and
      atomically moved into place
    - Network failures keep the tile IN_PROGRESS and ask for a retry,
      until the scheduler's last attempt
    - Disk and corrupt-archive failures fail the tile immediately
    - An area is settled only once none of its tiles is still pending
    - A tile whose record disappears mid-download (its area was removed)
      leaves no file behind

How to change safely:
    - Keep the temp-file + rename pattern; readers may open archives at any time
    - Add new archive checks to _validate with a CORRUPT reason
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple

import httpx

from ..errors import NotFoundError, TileDownloadFailure, TileFailureReason
from ..local.local_store import LocalStore
from ..model.basemap import OfflineAreaState, TileSource, TileSourceState
from ..sync.scheduler import WorkContext, WorkResult

logger = logging.getLogger(__name__)

TILE_DOWNLOAD_WORK_NAME = "tile-source-download"

MBTILES_HEADER = b"SQLite format 3\x00"


class TileSourceDownloadWorker:
    """Downloads pending tile sources and settles offline area state.

    Example:
        >>> worker = TileSourceDownloadWorker(store, "/var/lib/ground/tiles")
        >>> scheduler.enqueue_unique_work(TILE_DOWNLOAD_WORK_NAME, worker.do_work)
    """

    def __init__(
        self,
        local_store: LocalStore,
        tiles_dir: str,
        timeout_seconds: float = 300.0,
        chunk_size: int = 64 * 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the worker.

        Args:
            local_store: Store holding tile source and area state
            tiles_dir: Directory receiving downloaded archives
            timeout_seconds: Per-request timeout
            chunk_size: Bytes per streamed chunk
            transport: Optional httpx transport (used by tests)
        """
        self.local_store = local_store
        self.tiles_dir = Path(tiles_dir)
        self.timeout_seconds = timeout_seconds
        self.chunk_size = chunk_size
        self._transport = transport

    def path_for(self, tile_source: TileSource) -> Path:
        return self.tiles_dir / tile_source.path

    def discard(self, tile_source: TileSource) -> None:
        """Delete the archive of a tile source and any partial download."""
        target = self.path_for(tile_source)
        target.unlink(missing_ok=True)
        target.with_name(target.name + ".part").unlink(missing_ok=True)

    async def do_work(self, ctx: WorkContext) -> WorkResult:
        """Download every pending tile source.

        Returns:
            RETRY if any tile hit a network failure before the last attempt,
            SUCCESS otherwise (failed tiles are recorded, not retried)
        """
        tiles = await self.local_store.get_pending_tile_sources()
        needs_retry = False

        if tiles:
            logger.info(
                "Downloading tile sources",
                extra={"count": len(tiles), "attempt": ctx.attempt},
            )
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                for tile in tiles:
                    if not await self._process(client, tile, ctx):
                        needs_retry = True

        await self.settle_areas()
        return WorkResult.RETRY if needs_retry else WorkResult.SUCCESS

    async def _process(
        self, client: httpx.AsyncClient, tile: TileSource, ctx: WorkContext
    ) -> bool:
        """Download one tile. Returns False if it should be retried later."""
        if tile.state == TileSourceState.PENDING:
            updated = await self._set_state(tile, TileSourceState.IN_PROGRESS)
            if updated is None:
                return True
            tile = updated

        try:
            await self._download(client, tile)
        except TileDownloadFailure as e:
            if e.reason == TileFailureReason.NETWORK and not ctx.is_last_attempt:
                logger.warning(
                    "Tile download interrupted, will retry",
                    extra={"tile_source_id": tile.id, "error": e.message},
                )
                return False
            logger.error(
                "Tile download failed",
                extra={"tile_source_id": tile.id, "reason": e.reason.value, "error": e.message},
            )
            await self._set_state(
                tile, TileSourceState.FAILED, error=f"{e.reason.value}: {e.message}"
            )
            return True

        if await self._set_state(tile, TileSourceState.DOWNLOADED) is not None:
            logger.info("Tile downloaded", extra={"tile_source_id": tile.id})
        return True

    async def _set_state(
        self, tile: TileSource, state: TileSourceState, error: str = ""
    ) -> Optional[TileSource]:
        """Record a tile state, or clean up if the tile was removed meanwhile."""
        try:
            return await self.local_store.update_tile_source_state(tile.id, state, error=error)
        except NotFoundError:
            self.discard(tile)
            logger.info(
                "Tile source removed during download", extra={"tile_source_id": tile.id}
            )
            return None

    async def _download(self, client: httpx.AsyncClient, tile: TileSource) -> None:
        target = self.path_for(tile)
        part = target.with_name(target.name + ".part")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TileDownloadFailure(str(e), tile.id, TileFailureReason.DISK) from e

        try:
            written, expected = await self._fetch(client, tile, part)
            self._validate(tile, part, written, expected)
            os.replace(part, target)
        except TileDownloadFailure:
            part.unlink(missing_ok=True)
            raise
        except OSError as e:
            part.unlink(missing_ok=True)
            raise TileDownloadFailure(str(e), tile.id, TileFailureReason.DISK) from e

    async def _fetch(
        self, client: httpx.AsyncClient, tile: TileSource, part: Path
    ) -> Tuple[int, Optional[int]]:
        written = 0
        expected: Optional[int] = None
        try:
            async with client.stream("GET", tile.url) as response:
                if response.status_code >= 400:
                    raise TileDownloadFailure(
                        f"GET {tile.url} returned {response.status_code}",
                        tile.id,
                        TileFailureReason.NETWORK,
                    )
                length = response.headers.get("Content-Length")
                if length is not None and "Content-Encoding" not in response.headers:
                    expected = int(length)
                with open(part, "wb") as f:
                    async for chunk in response.aiter_bytes(self.chunk_size):
                        f.write(chunk)
                        written += len(chunk)
        except httpx.HTTPError as e:
            message = str(e) or type(e).__name__
            raise TileDownloadFailure(message, tile.id, TileFailureReason.NETWORK) from e
        return written, expected

    def _validate(
        self, tile: TileSource, part: Path, written: int, expected: Optional[int]
    ) -> None:
        if written == 0:
            raise TileDownloadFailure("Empty archive", tile.id, TileFailureReason.CORRUPT)
        if expected is not None and written != expected:
            raise TileDownloadFailure(
                f"Archive truncated: {written} of {expected} bytes",
                tile.id,
                TileFailureReason.CORRUPT,
            )
        if tile.path.endswith(".mbtiles"):
            with open(part, "rb") as f:
                header = f.read(len(MBTILES_HEADER))
            if header != MBTILES_HEADER:
                raise TileDownloadFailure(
                    "Not an MBTiles archive", tile.id, TileFailureReason.CORRUPT
                )

    async def settle_areas(self) -> List[str]:
        """Move IN_PROGRESS areas whose tiles are all finished to their final state.

        Returns:
            Ids of the areas that changed state
        """
        tiles = await self.local_store.get_tile_sources()
        settled = []
        for area in await self.local_store.get_offline_areas():
            if area.state != OfflineAreaState.IN_PROGRESS:
                continue
            states = [t.state for t in tiles if t.bounds.intersects(area.bounds)]
            if any(s in (TileSourceState.PENDING, TileSourceState.IN_PROGRESS) for s in states):
                continue
            final = (
                OfflineAreaState.FAILED
                if TileSourceState.FAILED in states
                else OfflineAreaState.DOWNLOADED
            )
            await self.local_store.update_offline_area_state(area.id, final)
            settled.append(area.id)
            logger.info("Offline area settled", extra={"area_id": area.id, "state": final.value})
        return settled
