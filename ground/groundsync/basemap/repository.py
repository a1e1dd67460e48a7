"""
Offline basemap repository: user-facing operations on offline areas.

An offline area is a rectangle the user wants available without network.
Adding one resolves the tile archives intersecting it from the project's
basemap source index, persists them with the area, and schedules the
download worker. Tile ownership is derived: a tile belongs to every area
whose bounds it intersects, recomputed whenever it matters.

Invariants:
    - Removing an area never deletes a tile another area still intersects
    - Storage size is computed on demand from files on disk
    - The download worker is the only writer of DOWNLOADED/FAILED tile states
"""

from __future__ import annotations

import logging
import uuid
from typing import AsyncIterator, List, Optional

import httpx

from ..errors import (
    BasemapError,
    GeocodingError,
    InvalidStateTransition,
    NoBaseMapSourceError,
    NoIntersectingTilesError,
    NotFoundError,
    TransientNetworkFailure,
)
from ..local.local_store import LocalStore
from ..model.basemap import (
    LatLngBounds,
    OfflineArea,
    OfflineAreaState,
    TileSource,
    TileSourceState,
)
from ..sync.scheduler import ExistingWorkPolicy, WorkScheduler
from . import geojson
from .downloader import TILE_DOWNLOAD_WORK_NAME, TileSourceDownloadWorker
from .geocoding import UNKNOWN_AREA_NAME, Geocoder

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


class OfflineBaseMapRepository:
    """Offline area management.

    Example:
        >>> repo = OfflineBaseMapRepository(store, scheduler, worker, geocoder)
        >>> area = await repo.add_area_and_enqueue("project_1", bounds)
        >>> await repo.area_storage_size_mb(area)
        >>> await repo.remove_area(area.id)
    """

    def __init__(
        self,
        local_store: LocalStore,
        scheduler: WorkScheduler,
        download_worker: TileSourceDownloadWorker,
        geocoder: Geocoder,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the repository.

        Args:
            local_store: Store holding areas and tile sources
            scheduler: Scheduler running the download worker
            download_worker: Worker downloading tile archives
            geocoder: Names new areas
            timeout_seconds: Timeout for fetching basemap source indexes
            transport: Optional httpx transport (used by tests)
        """
        self.local_store = local_store
        self.scheduler = scheduler
        self.download_worker = download_worker
        self.geocoder = geocoder
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def schedule_download(self) -> None:
        self.scheduler.enqueue_unique_work(
            TILE_DOWNLOAD_WORK_NAME,
            self.download_worker.do_work,
            ExistingWorkPolicy.APPEND,
        )

    async def _fetch_source_index(self, url: str) -> str:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise TransientNetworkFailure(f"Fetching basemap source {url} failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkFailure(
                f"Basemap source {url} returned {response.status_code}",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise BasemapError(
                f"Basemap source {url} returned {response.status_code}",
                details={"url": url, "status_code": response.status_code},
            )
        return response.text

    async def get_base_map_tile_sources(
        self, project_id: str, bounds: LatLngBounds
    ) -> List[TileSource]:
        """Tile sources of the project's first basemap source intersecting ``bounds``.

        Raises:
            NotFoundError: If the project is not stored locally
            NoBaseMapSourceError: If the project declares no basemap source
            TransientNetworkFailure: If the source index cannot be fetched
        """
        project = await self.local_store.get_project(project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        if not project.offline_base_map_sources:
            raise NoBaseMapSourceError(project_id)

        source = project.offline_base_map_sources[0]
        text = await self._fetch_source_index(source.url)
        return geojson.intersecting_tiles(bounds, text)

    async def _area_name(self, bounds: LatLngBounds) -> str:
        try:
            return await self.geocoder.get_area_name(bounds)
        except GeocodingError as e:
            logger.warning("Could not name offline area", extra={"error": e.message})
            return UNKNOWN_AREA_NAME

    async def add_area_and_enqueue(self, project_id: str, bounds: LatLngBounds) -> OfflineArea:
        """Create an offline area and schedule download of its tiles.

        Args:
            project_id: Project whose basemap source declares the tiles
            bounds: Area to make available offline

        Returns:
            The stored area (IN_PROGRESS)

        Raises:
            NoIntersectingTilesError: If no declared tile intersects ``bounds``
            NoBaseMapSourceError, NotFoundError, TransientNetworkFailure: See
                get_base_map_tile_sources
        """
        name = await self._area_name(bounds)
        area = OfflineArea(
            id=uuid.uuid4().hex,
            bounds=bounds,
            name=name,
            state=OfflineAreaState.PENDING,
        )

        tiles = await self.get_base_map_tile_sources(project_id, bounds)
        if not tiles:
            raise NoIntersectingTilesError(bounds)

        stored = await self.local_store.enqueue_area_download(area, tiles)
        self.schedule_download()
        logger.info(
            "Offline area enqueued",
            extra={"area_id": area.id, "name": name, "tiles": len(tiles)},
        )
        return stored

    async def get_offline_area(self, area_id: str) -> Optional[OfflineArea]:
        return await self.local_store.get_offline_area(area_id)

    async def get_offline_areas(self) -> List[OfflineArea]:
        return await self.local_store.get_offline_areas()

    def offline_areas_once_and_stream(self) -> AsyncIterator[List[OfflineArea]]:
        return self.local_store.offline_areas_once_and_stream()

    async def get_intersecting_downloaded_tile_sources(self, area: OfflineArea) -> List[TileSource]:
        return _downloaded_in(area, await self.local_store.get_tile_sources())

    async def intersecting_downloaded_tile_sources_once_and_stream(
        self, area: OfflineArea
    ) -> AsyncIterator[List[TileSource]]:
        stream = self.local_store.tile_sources_once_and_stream()
        try:
            async for tiles in stream:
                yield _downloaded_in(area, tiles)
        finally:
            await stream.aclose()

    async def area_storage_size(self, area: OfflineArea) -> int:
        """Bytes on disk used by the downloaded tiles intersecting ``area``."""
        total = 0
        for tile in await self.get_intersecting_downloaded_tile_sources(area):
            path = self.download_worker.path_for(tile)
            try:
                total += path.stat().st_size
            except FileNotFoundError:
                logger.warning(
                    "Downloaded tile missing from disk",
                    extra={"tile_source_id": tile.id, "path": str(path)},
                )
        return total

    async def area_storage_size_mb(self, area: OfflineArea) -> float:
        return await self.area_storage_size(area) / BYTES_PER_MB

    async def remove_area(self, area_id: str) -> List[TileSource]:
        """Delete an area and the tiles no remaining area needs.

        Returns:
            Tile sources whose records and files were removed

        Raises:
            NotFoundError: If the area doesn't exist
        """
        released = await self.local_store.delete_offline_area_and_release(area_id)
        for tile in released:
            self.download_worker.discard(tile)
        logger.info(
            "Offline area removed",
            extra={"area_id": area_id, "released_tiles": len(released)},
        )
        return released

    async def retry_area(self, area_id: str) -> OfflineArea:
        """Retry a FAILED area: its failed tiles go back to PENDING.

        Raises:
            NotFoundError: If the area doesn't exist
            InvalidStateTransition: If the area is not FAILED
        """
        area = await self.local_store.get_offline_area(area_id)
        if area is None:
            raise NotFoundError("OfflineArea", area_id)
        if area.state != OfflineAreaState.FAILED:
            raise InvalidStateTransition(
                area_id, area.state.value, OfflineAreaState.IN_PROGRESS.value
            )

        tiles = [
            t for t in await self.local_store.get_tile_sources() if t.bounds.intersects(area.bounds)
        ]
        stored = await self.local_store.enqueue_area_download(area, tiles)
        self.schedule_download()
        logger.info("Retrying offline area", extra={"area_id": area_id})
        return stored

    async def resume(self) -> bool:
        """Schedule the download worker if tiles or areas are unfinished.

        Called on process start.
        """
        pending = await self.local_store.get_pending_tile_sources()
        areas = [
            a
            for a in await self.local_store.get_offline_areas()
            if a.state == OfflineAreaState.IN_PROGRESS
        ]
        if pending or areas:
            logger.info(
                "Resuming tile downloads",
                extra={"pending_tiles": len(pending), "areas": len(areas)},
            )
            self.schedule_download()
            return True
        return False


def _downloaded_in(area: OfflineArea, tiles: List[TileSource]) -> List[TileSource]:
    return [
        t
        for t in tiles
        if t.state == TileSourceState.DOWNLOADED and t.bounds.intersects(area.bounds)
    ]
