"""
Parser for offline basemap source indexes.

A basemap source is a GeoJSON FeatureCollection. Each feature describes one
downloadable tile archive: its geometry is the archive's extent and its
properties carry the archive ``url`` (and optionally an ``id``).

Example:
    {
      "type": "FeatureCollection",
      "features": [
        {
          "type": "Feature",
          "id": "tile_1",
          "geometry": {
            "type": "Polygon",
            "coordinates": [[[10, 0], [11, 0], [11, 1], [10, 1], [10, 0]]]
          },
          "properties": {"url": "https://tiles.example.org/tile_1.mbtiles"}
        }
      ]
    }
"""

from __future__ import annotations

import hashlib
import json
import logging
import posixpath
import re
from typing import Any, Iterator, List, Optional, Tuple
from urllib.parse import urlparse

from ..errors import BasemapError
from ..model.basemap import LatLngBounds, TileSource, TileSourceState

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def _positions(coordinates: Any) -> Iterator[Tuple[float, float]]:
    """Yield every (lng, lat) position in nested GeoJSON coordinates."""
    if (
        isinstance(coordinates, (list, tuple))
        and len(coordinates) >= 2
        and all(isinstance(c, (int, float)) for c in coordinates[:2])
    ):
        yield float(coordinates[0]), float(coordinates[1])
        return
    if isinstance(coordinates, (list, tuple)):
        for item in coordinates:
            yield from _positions(item)


def geometry_bounds(geometry: Any) -> Optional[LatLngBounds]:
    """Bounding box of a Polygon or MultiPolygon geometry, or None."""
    if not isinstance(geometry, dict):
        return None
    if geometry.get("type") not in ("Polygon", "MultiPolygon"):
        return None
    positions = list(_positions(geometry.get("coordinates")))
    if not positions:
        return None
    return LatLngBounds.of(
        min(lat for _, lat in positions),
        min(lng for lng, _ in positions),
        max(lat for _, lat in positions),
        max(lng for lng, _ in positions),
    )


def tile_path_for(tile_id: str, url: str) -> str:
    """Local file name for a tile archive, relative to the tiles directory.

    Named after the tile id, which is unique within the index; only the
    extension comes from the url. Ids that are not safe file names (urls,
    for instance) are shortened and suffixed with a digest of the full id.
    """
    extension = posixpath.splitext(posixpath.basename(urlparse(url).path))[1] or ".mbtiles"
    name = _UNSAFE_NAME_CHARS.sub("_", tile_id).strip("._")
    if name != tile_id:
        digest = hashlib.sha1(tile_id.encode("utf-8")).hexdigest()[:12]
        name = f"{name[:48]}-{digest}" if name else digest
    return f"{name}{extension}"


def parse_tile_sources(geojson_text: str) -> List[TileSource]:
    """Parse every tile source declared in a basemap source index.

    Features without a usable geometry or url are skipped.

    Raises:
        BasemapError: If the document is not a GeoJSON FeatureCollection
    """
    try:
        document = json.loads(geojson_text)
    except json.JSONDecodeError as e:
        raise BasemapError(f"Invalid basemap source index: {e}") from e

    if not isinstance(document, dict) or document.get("type") != "FeatureCollection":
        raise BasemapError("Basemap source index is not a GeoJSON FeatureCollection")

    tiles: List[TileSource] = []
    for index, feature in enumerate(document.get("features") or []):
        if not isinstance(feature, dict):
            continue
        properties = feature.get("properties") or {}
        url = properties.get("url")
        bounds = geometry_bounds(feature.get("geometry"))
        if not url or bounds is None:
            logger.warning("Skipping unusable tile source entry", extra={"index": index})
            continue
        tile_id = str(feature.get("id") or properties.get("id") or url)
        tiles.append(
            TileSource(
                id=tile_id,
                url=url,
                path=tile_path_for(tile_id, url),
                bounds=bounds,
                state=TileSourceState.PENDING,
            )
        )
    return tiles


def intersecting_tiles(bounds: LatLngBounds, geojson_text: str) -> List[TileSource]:
    """Tile sources of the index whose extent intersects ``bounds``.

    Args:
        bounds: Requested area
        geojson_text: Basemap source index

    Returns:
        PENDING tile sources, in index order
    """
    return [t for t in parse_tile_sources(geojson_text) if t.bounds.intersects(bounds)]
