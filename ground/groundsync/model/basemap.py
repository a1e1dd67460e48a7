"""
Offline basemap entities: geographic bounds, tile sources and offline areas.

Tile ownership is many-to-many and derived: an OfflineArea references every
TileSource whose extent intersects its bounds. Nothing stores the
association; it is recomputed whenever it is needed.

Invariants:
    - A DOWNLOADED tile source has its archive on local storage
    - Tile source state only moves forward, except FAILED -> PENDING (retry)
    - Offline area state only moves forward, except FAILED -> IN_PROGRESS (retry)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable

from .entities import Point


@dataclass(frozen=True)
class LatLngBounds:
    """Axis-aligned latitude/longitude rectangle.

    Attributes:
        south_west: Minimum latitude/longitude corner
        north_east: Maximum latitude/longitude corner
    """

    south_west: Point
    north_east: Point

    def __post_init__(self) -> None:
        if self.south_west.latitude > self.north_east.latitude:
            raise ValueError(f"South-west corner is north of north-east corner: {self}")

    @classmethod
    def of(cls, south: float, west: float, north: float, east: float) -> LatLngBounds:
        return cls(Point(south, west), Point(north, east))

    @classmethod
    def around(cls, points: Iterable[Point]) -> LatLngBounds:
        """Smallest bounds containing every point."""
        pts = list(points)
        if not pts:
            raise ValueError("Cannot compute bounds of an empty point set")
        return cls.of(
            min(p.latitude for p in pts),
            min(p.longitude for p in pts),
            max(p.latitude for p in pts),
            max(p.longitude for p in pts),
        )

    @property
    def center(self) -> Point:
        return Point(
            (self.south_west.latitude + self.north_east.latitude) / 2,
            (self.south_west.longitude + self.north_east.longitude) / 2,
        )

    def contains(self, point: Point) -> bool:
        return (
            self.south_west.latitude <= point.latitude <= self.north_east.latitude
            and self.south_west.longitude <= point.longitude <= self.north_east.longitude
        )

    def intersects(self, other: LatLngBounds) -> bool:
        """Whether the two rectangles overlap (shared edges count)."""
        return not (
            other.south_west.latitude > self.north_east.latitude
            or other.north_east.latitude < self.south_west.latitude
            or other.south_west.longitude > self.north_east.longitude
            or other.north_east.longitude < self.south_west.longitude
        )

    def __str__(self) -> str:
        return (
            f"[{self.south_west.latitude},{self.south_west.longitude} - "
            f"{self.north_east.latitude},{self.north_east.longitude}]"
        )


class TileSourceState(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DOWNLOADED = "downloaded"
    FAILED = "failed"


class OfflineAreaState(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DOWNLOADED = "downloaded"
    FAILED = "failed"


TILE_SOURCE_TRANSITIONS: Dict[TileSourceState, FrozenSet[TileSourceState]] = {
    TileSourceState.PENDING: frozenset({TileSourceState.IN_PROGRESS, TileSourceState.FAILED}),
    TileSourceState.IN_PROGRESS: frozenset({TileSourceState.DOWNLOADED, TileSourceState.FAILED}),
    TileSourceState.DOWNLOADED: frozenset(),
    TileSourceState.FAILED: frozenset({TileSourceState.PENDING}),
}

OFFLINE_AREA_TRANSITIONS: Dict[OfflineAreaState, FrozenSet[OfflineAreaState]] = {
    OfflineAreaState.PENDING: frozenset({OfflineAreaState.IN_PROGRESS, OfflineAreaState.FAILED}),
    OfflineAreaState.IN_PROGRESS: frozenset(
        {OfflineAreaState.DOWNLOADED, OfflineAreaState.FAILED}
    ),
    OfflineAreaState.DOWNLOADED: frozenset(),
    OfflineAreaState.FAILED: frozenset({OfflineAreaState.IN_PROGRESS}),
}


def can_transition_tile(from_state: TileSourceState, to_state: TileSourceState) -> bool:
    return from_state == to_state or to_state in TILE_SOURCE_TRANSITIONS[from_state]


def can_transition_area(from_state: OfflineAreaState, to_state: OfflineAreaState) -> bool:
    return from_state == to_state or to_state in OFFLINE_AREA_TRANSITIONS[from_state]


@dataclass(frozen=True)
class TileSource:
    """One downloadable tile archive.

    Attributes:
        id: Identifier from the basemap index
        url: Download URL of the archive
        path: File name of the archive relative to the tiles directory
        bounds: Geographic extent declared by the basemap index
        state: Download state
        last_error: Reason of the last failed download, if any
    """

    id: str
    url: str
    path: str
    bounds: LatLngBounds
    state: TileSourceState = TileSourceState.PENDING
    last_error: str = ""


@dataclass(frozen=True)
class OfflineArea:
    """A user-requested region kept available offline.

    Attributes:
        id: Area identifier
        bounds: Requested viewport
        name: Reverse-geocoded display name
        state: Download state
    """

    id: str
    bounds: LatLngBounds
    name: str
    state: OfflineAreaState = OfflineAreaState.PENDING
