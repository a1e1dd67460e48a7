"""
Unit tests for basemap source index parsing and bounds geometry.

Tests cover:
- LatLngBounds intersection
- Polygon and MultiPolygon extents
- Tile ids and local paths
- Invalid documents
"""

import json

import pytest

from ground.groundsync.basemap import intersecting_tiles, parse_tile_sources
from ground.groundsync.basemap.geojson import geometry_bounds, tile_path_for
from ground.groundsync.errors import BasemapError
from ground.groundsync.model import LatLngBounds, Point, TileSourceState


def square(west, south, east, north):
    return {
        "type": "Polygon",
        "coordinates": [
            [[west, south], [east, south], [east, north], [west, north], [west, south]]
        ],
    }


def index(*features):
    return json.dumps({"type": "FeatureCollection", "features": list(features)})


class TestLatLngBounds:
    """Tests for rectangle geometry."""

    def test_overlapping(self):
        a = LatLngBounds.of(0, 0, 2, 2)
        b = LatLngBounds.of(1, 1, 3, 3)

        assert a.intersects(b)
        assert b.intersects(a)

    def test_shared_edge_counts(self):
        assert LatLngBounds.of(0, 0, 1, 1).intersects(LatLngBounds.of(0, 1, 1, 2))

    def test_disjoint(self):
        assert not LatLngBounds.of(0, 0, 1, 1).intersects(LatLngBounds.of(2, 2, 3, 3))

    def test_center_and_contains(self):
        bounds = LatLngBounds.of(0, 10, 2, 20)

        assert bounds.center == Point(1.0, 15.0)
        assert bounds.contains(Point(1.0, 12.0))
        assert not bounds.contains(Point(3.0, 12.0))

    def test_inverted_corners_rejected(self):
        with pytest.raises(ValueError):
            LatLngBounds.of(5, 0, 1, 1)


class TestGeometry:
    """Tests for geometry_bounds."""

    def test_polygon(self):
        assert geometry_bounds(square(10, 0, 11, 1)) == LatLngBounds.of(0, 10, 1, 11)

    def test_multipolygon(self):
        geometry = {
            "type": "MultiPolygon",
            "coordinates": [
                square(0, 0, 1, 1)["coordinates"],
                square(5, 5, 6, 7)["coordinates"],
            ],
        }

        assert geometry_bounds(geometry) == LatLngBounds.of(0, 0, 7, 6)

    def test_unsupported_geometry(self):
        assert geometry_bounds({"type": "Point", "coordinates": [1, 2]}) is None
        assert geometry_bounds(None) is None


class TestParseTileSources:
    """Tests for parse_tile_sources."""

    def test_parse(self):
        """Each feature becomes a PENDING tile source."""
        text = index(
            {
                "type": "Feature",
                "id": "tile_1",
                "geometry": square(10, 0, 11, 1),
                "properties": {"url": "https://tiles.example.org/a/tile_1.mbtiles"},
            }
        )

        [tile] = parse_tile_sources(text)

        assert tile.id == "tile_1"
        assert tile.url == "https://tiles.example.org/a/tile_1.mbtiles"
        assert tile.path == "tile_1.mbtiles"
        assert tile.bounds == LatLngBounds.of(0, 10, 1, 11)
        assert tile.state == TileSourceState.PENDING

    def test_id_falls_back_to_property_then_url(self):
        text = index(
            {
                "type": "Feature",
                "geometry": square(0, 0, 1, 1),
                "properties": {"id": "prop_id", "url": "https://t.example.org/x.mbtiles"},
            },
            {
                "type": "Feature",
                "geometry": square(1, 0, 2, 1),
                "properties": {"url": "https://t.example.org/y.mbtiles"},
            },
        )

        tiles = parse_tile_sources(text)

        assert [t.id for t in tiles] == ["prop_id", "https://t.example.org/y.mbtiles"]

    def test_unusable_entries_skipped(self):
        text = index(
            {"type": "Feature", "geometry": square(0, 0, 1, 1), "properties": {}},
            {"type": "Feature", "geometry": None, "properties": {"url": "https://x/y.mbtiles"}},
            "not a feature",
        )

        assert parse_tile_sources(text) == []

    def test_invalid_json(self):
        with pytest.raises(BasemapError):
            parse_tile_sources("{not json")

    def test_not_a_feature_collection(self):
        with pytest.raises(BasemapError):
            parse_tile_sources(json.dumps({"type": "Feature"}))

    def test_intersecting_tiles(self):
        text = index(
            {"type": "Feature", "id": "west", "geometry": square(0, 0, 1, 1),
             "properties": {"url": "https://t.example.org/west.mbtiles"}},
            {"type": "Feature", "id": "east", "geometry": square(5, 0, 6, 1),
             "properties": {"url": "https://t.example.org/east.mbtiles"}},
        )

        tiles = intersecting_tiles(LatLngBounds.of(0.2, 0.2, 0.8, 0.8), text)

        assert [t.id for t in tiles] == ["west"]


class TestTilePath:
    def test_path_named_after_tile_id(self):
        assert tile_path_for("t1", "https://x.example.org/dir/archive.mbtiles?sig=1") == "t1.mbtiles"

    def test_path_without_file_name(self):
        assert tile_path_for("t1", "https://x.example.org/") == "t1.mbtiles"

    def test_same_file_name_different_ids(self):
        a = tile_path_for("a", "https://x.example.org/a/tile.mbtiles")
        b = tile_path_for("b", "https://x.example.org/b/tile.mbtiles")
        assert a != b

    def test_unsafe_id_gets_digest(self):
        first = tile_path_for("https://x.example.org/a/tile.mbtiles", "https://x.example.org/a/tile.mbtiles")
        second = tile_path_for("https://x.example.org/b/tile.mbtiles", "https://x.example.org/b/tile.mbtiles")
        assert first != second
        assert "/" not in first and ":" not in first
        assert first.endswith(".mbtiles")
