"""
Filter conditions a user can stack up on the map's query panel.

Each condition turns itself into one fragment of the boolean query, or
``None`` when it is incomplete (a polygon with fewer than three corners, a
range with no bounds, a terms filter with nothing ticked).  Incomplete
conditions are silently left out of the compiled query rather than raising,
so the panel can hold half-built filters while the user works.

Usage
-----
    cond = QueryFilter.ALTITUDE.create_instance()
    cond.minimum = 1500.0
    cond.fragment()   # {"range": {"imageMetadata.altitude": {"gte": 1500.0}}}
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shapely.geometry import Polygon

log = logging.getLogger(__name__)

# ── Metadata index field names ────────────────────────────────────────

POSITION_FIELD = "imageMetadata.position"
ALTITUDE_FIELD = "imageMetadata.altitude"
CAMERA_MODEL_FIELD = "imageMetadata.cameraModel"
DATE_TAKEN_FIELD = "imageMetadata.dateTaken"
DRONE_MAKER_FIELD = "imageMetadata.droneMaker"
SITE_CODE_FIELD = "imageMetadata.neonSiteCode"
YEAR_FIELD = "imageMetadata.yearTaken"
MONTH_FIELD = "imageMetadata.monthTaken"
HOUR_FIELD = "imageMetadata.hourTaken"
COLLECTION_FIELD = "collectionID"

# Python and backend spellings of the index date format
INDEX_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
INDEX_DATE_FORMAT_BACKEND = "yyyy-MM-dd HH:mm:ss"

Fragment = Dict[str, Any]


class FilterCondition(ABC):
    """One entry in the query panel.  Disabled conditions are never compiled."""

    label = "Condition"

    def __init__(self) -> None:
        self.enabled = True

    @abstractmethod
    def fragment(self) -> Optional[Fragment]:
        """Return this condition's query fragment, or None if incomplete."""

    def __repr__(self) -> str:
        state = "on" if self.enabled else "off"
        return f"<{type(self).__name__} {self.label!r} {state}>"


class TermsCondition(FilterCondition):
    """Field must equal one of a set of values (collection, camera, month...)."""

    def __init__(self, field: str, values: Sequence[Any] = (), label: str = "") -> None:
        super().__init__()
        self.field = field
        self.values: List[Any] = list(values)
        self.label = label or field

    def fragment(self) -> Optional[Fragment]:
        if not self.values:
            return None
        return {"terms": {self.field: list(self.values)}}


class RangeCondition(FilterCondition):
    """Numeric field within ``[minimum, maximum]``; either bound may be open."""

    def __init__(
        self,
        field: str,
        minimum: Optional[float] = None,
        maximum: Optional[float] = None,
        label: str = "",
    ) -> None:
        super().__init__()
        self.field = field
        self.minimum = minimum
        self.maximum = maximum
        self.label = label or field

    def fragment(self) -> Optional[Fragment]:
        bounds: Dict[str, float] = {}
        if self.minimum is not None:
            bounds["gte"] = self.minimum
        if self.maximum is not None:
            bounds["lte"] = self.maximum
        if not bounds:
            return None
        return {"range": {self.field: bounds}}


class DateIntervalCondition(FilterCondition):
    """Image taken between ``start`` and ``end`` (inclusive, either open)."""

    label = "Date taken"

    def __init__(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        field: str = DATE_TAKEN_FIELD,
    ) -> None:
        super().__init__()
        self.start = start
        self.end = end
        self.field = field

    def fragment(self) -> Optional[Fragment]:
        bounds: Dict[str, str] = {}
        if self.start is not None:
            bounds["gte"] = self.start.strftime(INDEX_DATE_FORMAT)
        if self.end is not None:
            bounds["lte"] = self.end.strftime(INDEX_DATE_FORMAT)
        if not bounds:
            return None
        bounds["format"] = INDEX_DATE_FORMAT_BACKEND
        return {"range": {self.field: bounds}}


class PolygonCondition(FilterCondition):
    """Image position inside a polygon drawn on the map.

    Points are ``(lat, lon)`` pairs in drawing order.  The polygon only
    contributes once it has three distinct corners enclosing some area.
    """

    label = "Map polygon"

    def __init__(self, points: Sequence[Tuple[float, float]] = (), field: str = POSITION_FIELD) -> None:
        super().__init__()
        self.points: List[Tuple[float, float]] = [tuple(p) for p in points]
        self.field = field

    def add_point(self, lat: float, lon: float) -> None:
        self.points.append((lat, lon))

    def remove_point(self, index: int) -> None:
        del self.points[index]

    def ring(self) -> Optional[List[List[float]]]:
        """Closed ``[lon, lat]`` ring, or None if the polygon is degenerate."""
        distinct: List[Tuple[float, float]] = []
        for p in self.points:
            if p not in distinct:
                distinct.append(p)
        if len(distinct) < 3:
            return None
        coords = [[lon, lat] for lat, lon in distinct]
        poly = Polygon(coords)
        if not poly.is_valid or poly.area == 0.0:
            log.debug("Skipping invalid map polygon %s", distinct)
            return None
        return coords + [list(coords[0])]

    def fragment(self) -> Optional[Fragment]:
        ring = self.ring()
        if ring is None:
            return None
        return {
            "geo_shape": {
                self.field: {
                    "shape": {"type": "polygon", "coordinates": [ring]},
                    "relation": "intersects",
                }
            }
        }


# ── Filter catalogue ──────────────────────────────────────────────────

class QueryFilter(Enum):
    """Filters offered in the "add condition" list."""

    COLLECTION = ("Collection", COLLECTION_FIELD)
    CAMERA_MODEL = ("Camera model", CAMERA_MODEL_FIELD)
    DRONE_MAKER = ("Drone maker", DRONE_MAKER_FIELD)
    SITE_CODE = ("Site", SITE_CODE_FIELD)
    ALTITUDE = ("Altitude", ALTITUDE_FIELD)
    DATE_TAKEN = ("Date taken", DATE_TAKEN_FIELD)
    MAP_POLYGON = ("Map polygon", POSITION_FIELD)
    YEAR = ("Year taken", YEAR_FIELD)
    MONTH = ("Month taken", MONTH_FIELD)
    HOUR = ("Hour taken", HOUR_FIELD)

    def __init__(self, display_name: str, field: str) -> None:
        self.display_name = display_name
        self.field = field

    def create_instance(self) -> FilterCondition:
        if self is QueryFilter.ALTITUDE:
            return RangeCondition(self.field, label=self.display_name)
        if self is QueryFilter.DATE_TAKEN:
            return DateIntervalCondition(field=self.field)
        if self is QueryFilter.MAP_POLYGON:
            return PolygonCondition(field=self.field)
        return TermsCondition(self.field, label=self.display_name)

    def __str__(self) -> str:
        return self.display_name

