"""
Viewport geometry — what part of the world the map is showing.

The map widget reports its corners as raw floats which can run off the
edge of the world when the user drags past a pole or wraps around the
antimeridian.  Every corner is clamped into valid WGS84 range before it is
used to build a query, and the zoom level is folded into a geohash depth
with :func:`depth_for_zoom`.

Usage
-----
    vp = Viewport.from_corners(north=48.2, west=-125.0, south=31.0, east=-100.0, zoom=6.5)
    depth = depth_for_zoom(vp.zoom)          # → 2
    vp.bounding_box("imageMetadata.position")
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Tuple

from ..errors import InvalidGeometryError

MAX_LATITUDE = 90.0
MAX_LONGITUDE = 180.0

# (highest zoom, geohash depth); anything above the last step gets depth 9
_DEPTH_STEPS: Tuple[Tuple[float, int], ...] = (
    (5.0, 1),
    (8.0, 2),
    (10.0, 3),
    (12.0, 4),
    (14.0, 5),
    (16.0, 6),
    (18.0, 7),
    (19.0, 8),
)
MAX_DEPTH = 9


def clamp(value: float, low: float, high: float) -> float:
    """Clamp *value* into ``[low, high]``."""
    return max(low, min(high, value))


def clamp_latitude(lat: float) -> float:
    return clamp(lat, -MAX_LATITUDE, MAX_LATITUDE)


def clamp_longitude(lon: float) -> float:
    return clamp(lon, -MAX_LONGITUDE, MAX_LONGITUDE)


def depth_for_zoom(zoom: float) -> int:
    """Map a (fractional) zoom level to a geohash aggregation depth, 1..9.

    Coarser cells when zoomed out, finer cells when zoomed in.  The
    function is a monotone step function.
    """
    for max_zoom, depth in _DEPTH_STEPS:
        if zoom <= max_zoom:
            return depth
    return MAX_DEPTH


@dataclass(frozen=True)
class Viewport:
    """Clamped map viewport.

    Corners are ``(lat, lon)``.  ``west > east`` is allowed and means the
    view crosses the antimeridian.
    """

    top_left: Tuple[float, float]
    bottom_right: Tuple[float, float]
    zoom: float

    @classmethod
    def from_corners(cls, north: float, west: float, south: float, east: float,
                     zoom: float) -> "Viewport":
        """Build a viewport from raw widget values, clamping every coordinate."""
        for v in (north, west, south, east, zoom):
            if v is None or math.isnan(v):
                raise InvalidGeometryError(
                    f"Viewport has an undefined coordinate: "
                    f"n={north} w={west} s={south} e={east} z={zoom}"
                )
        return cls(
            top_left=(clamp_latitude(north), clamp_longitude(west)),
            bottom_right=(clamp_latitude(south), clamp_longitude(east)),
            zoom=zoom,
        )

    @property
    def north(self) -> float:
        return self.top_left[0]

    @property
    def west(self) -> float:
        return self.top_left[1]

    @property
    def south(self) -> float:
        return self.bottom_right[0]

    @property
    def east(self) -> float:
        return self.bottom_right[1]

    @property
    def depth(self) -> int:
        return depth_for_zoom(self.zoom)

    def validate(self) -> None:
        """Raise :class:`InvalidGeometryError` if the box cannot be queried."""
        if self.north < self.south:
            raise InvalidGeometryError(
                f"Viewport top latitude {self.north} is below bottom latitude {self.south}"
            )

    def bounding_box(self, field: str) -> Dict:
        """``geo_bounding_box`` query restricting *field* to this viewport."""
        self.validate()
        return {
            "geo_bounding_box": {
                field: {
                    "top_left": {"lat": self.north, "lon": self.west},
                    "bottom_right": {"lat": self.south, "lon": self.east},
                }
            }
        }

    def envelope(self) -> Dict:
        """GeoJSON-style ``envelope`` shape (``[[west, north], [east, south]]``)."""
        self.validate()
        return {
            "type": "envelope",
            "coordinates": [[self.west, self.north], [self.east, self.south]],
        }

