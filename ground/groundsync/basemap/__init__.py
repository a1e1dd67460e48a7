"""
Offline basemap pipeline for the Ground sync core.

This module provides:
- Parsing of basemap source indexes (GeoJSON tile extents)
- Reverse geocoding of area names
- OfflineBaseMapRepository: add, inspect, retry and remove offline areas
- TileSourceDownloadWorker: background archive downloads

Invariants:
    - Tile-to-area membership is bounds intersection, never stored
    - A tile still intersecting any area is never deleted
"""

from .downloader import TILE_DOWNLOAD_WORK_NAME, TileSourceDownloadWorker
from .geocoding import UNKNOWN_AREA_NAME, FixedNameGeocoder, Geocoder, NominatimGeocoder
from .geojson import intersecting_tiles, parse_tile_sources
from .repository import OfflineBaseMapRepository

__all__ = [
    "TILE_DOWNLOAD_WORK_NAME",
    "TileSourceDownloadWorker",
    "UNKNOWN_AREA_NAME",
    "FixedNameGeocoder",
    "Geocoder",
    "NominatimGeocoder",
    "intersecting_tiles",
    "parse_tile_sources",
    "OfflineBaseMapRepository",
]
