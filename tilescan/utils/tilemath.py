#!/usr/bin/env python3
"""
Slippy-map tile math.

Geographic bounding boxes are turned into inclusive ranges of tile indices
at a fixed zoom level.  The projection itself is the standard Web Mercator
scheme implemented by mercantile.

Usage:
    from tilescan.utils.tilemath import GeoBoundingBox, tile_bounding_box

    geo = GeoBoundingBox(lat_min=50.0, lon_min=5.0, lat_max=51.0, lon_max=6.0)
    tbox = tile_bounding_box(geo, 11)
    for coords in tbox.coordinates(11):
        ...
"""

from dataclasses import dataclass
from typing import Iterator, Sequence, Tuple

import mercantile

from tilescan.utils.constants import MAX_LATITUDE


@dataclass(frozen=True)
class GeoBoundingBox:
    """
    Rectangle in WGS84 degrees, as given by the user.

    Attributes:
        lat_min, lon_min: one corner
        lat_max, lon_max: the opposite corner
    """

    lat_min: float
    lon_min: float
    lat_max: float
    lon_max: float

    def __post_init__(self):
        for lat in (self.lat_min, self.lat_max):
            if not -90.0 <= lat <= 90.0:
                raise ValueError(f"latitude out of range: {lat}")
        for lon in (self.lon_min, self.lon_max):
            if not -180.0 <= lon <= 180.0:
                raise ValueError(f"longitude out of range: {lon}")

    @classmethod
    def from_list(cls, values: Sequence) -> "GeoBoundingBox":
        """
        Build from ``[lat_min, lon_min, lat_max, lon_max]``.

        Raises:
            ValueError: if values is not a sequence of four numbers
        """
        if isinstance(values, (str, bytes)) or len(values) != 4:
            raise ValueError(f"bbox must be a list of 4 numbers, got {values!r}")
        try:
            lat_min, lon_min, lat_max, lon_max = (float(v) for v in values)
        except (TypeError, ValueError):
            raise ValueError(f"bbox must be a list of 4 numbers, got {values!r}")
        return cls(lat_min, lon_min, lat_max, lon_max)

    def to_list(self) -> list:
        return [self.lat_min, self.lon_min, self.lat_max, self.lon_max]


@dataclass(frozen=True)
class TileCoordinate:
    x: int
    y: int
    z: int

    @property
    def key(self) -> str:
        """Canonical key used for map lookups and reply correlation."""
        return f"{self.x}-{self.y}-{self.z}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class TileBoundingBox:
    """Inclusive range of tile indices on both axes."""

    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x + 1

    @property
    def height(self) -> int:
        return self.max_y - self.min_y + 1

    @property
    def tile_count(self) -> int:
        return self.width * self.height

    def coordinates(self, zoom: int) -> Iterator[TileCoordinate]:
        """Every cell of the grid, x-major then y."""
        for x in range(self.min_x, self.max_x + 1):
            for y in range(self.min_y, self.max_y + 1):
                yield TileCoordinate(x, y, zoom)


def tile_for_coordinate(lat: float, lon: float, zoom: int) -> Tuple[int, int]:
    lat = max(-MAX_LATITUDE, min(MAX_LATITUDE, lat))
    tile = mercantile.tile(lon, lat, zoom)
    # mercantile returns 2**zoom for the antimeridian / pole edge
    last = (1 << zoom) - 1
    return min(tile.x, last), min(tile.y, last)


def tile_bounding_box(bbox: GeoBoundingBox, zoom: int) -> TileBoundingBox:
    """
    Project two opposite corners and take per-axis min/max.

    Latitude grows northwards while tile y grows southwards, so the corner
    order says nothing about which index is the smaller one.
    """
    x1, y1 = tile_for_coordinate(bbox.lat_min, bbox.lon_min, zoom)
    x2, y2 = tile_for_coordinate(bbox.lat_max, bbox.lon_max, zoom)
    return TileBoundingBox(
        min_x=min(x1, x2),
        min_y=min(y1, y2),
        max_x=max(x1, x2),
        max_y=max(y1, y2),
    )
