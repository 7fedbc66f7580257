"""
Geo aggregator — buckets the matching images into geohash cells.

One request per run.  The backend does all the heavy lifting:

  filtered_cells   filter(geo_bounding_box on the viewport)
    └─ cells       geohash_grid(precision = depth)
         ├─ center_lat    avg(position.lat)
         ├─ center_lon    avg(position.lon)
         └─ document_ids  terms(_id, size = max samples)

so the client only ever receives one small record per visible cell no
matter how many million images match.  Each record becomes an immutable
:class:`GeoBucket`.

Usage
-----
    aggregator = GeoAggregator(backend, cfg, reporter)
    buckets = aggregator.perform(viewport, depth_for_zoom(viewport.zoom), query, 20)
    for b in buckets:
        print(b.center_latitude, b.center_longitude, b.document_count)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..config import CalliopeConfig
from ..errors import ErrorReporter, InvalidGeometryError, SearchRequestError
from ..query.compiler import CompiledQuery
from ..query.conditions import POSITION_FIELD
from ..search import geohash
from ..search.backend import SearchBackend
from .viewport import Viewport

log = logging.getLogger(__name__)

FILTER_AGG = "filtered_cells"
GRID_AGG = "cells"
LAT_AGG = "center_lat"
LON_AGG = "center_lon"
IDS_AGG = "document_ids"


@dataclass(frozen=True)
class GeoBucket:
    """One non-empty geohash cell of an aggregation run."""

    center_latitude: float
    center_longitude: float
    document_count: int              # may exceed len(document_ids)
    document_ids: Tuple[str, ...]    # sample, at most the configured cap

    @property
    def position(self) -> Tuple[float, float]:
        return self.center_latitude, self.center_longitude


def build_aggregation_request(
    viewport: Viewport,
    depth: int,
    query: CompiledQuery,
    max_samples: int,
    field: str = POSITION_FIELD,
) -> Dict:
    """Build the ``size: 0`` aggregation body for one run.

    Raises
    ------
    InvalidGeometryError
        If the viewport fails validation after clamping.
    ValueError
        If *depth* is outside the geohash precision range.
    """
    if not geohash.MIN_PRECISION <= depth <= geohash.MAX_PRECISION:
        raise ValueError(f"Geohash depth must be 1..12, got {depth}")
    coord_script = "doc['%s'].%s"
    return {
        "size": 0,
        "query": query.body,
        "aggs": {
            FILTER_AGG: {
                "filter": viewport.bounding_box(field),
                "aggs": {
                    GRID_AGG: {
                        "geohash_grid": {"field": field, "precision": depth},
                        "aggs": {
                            LAT_AGG: {"avg": {"script": coord_script % (field, "lat")}},
                            LON_AGG: {"avg": {"script": coord_script % (field, "lon")}},
                            IDS_AGG: {"terms": {"field": "_id", "size": max_samples}},
                        },
                    }
                },
            }
        },
    }


def _value(bucket: Dict, name: str) -> Optional[float]:
    value = (bucket.get(name) or {}).get("value")
    if value is None:
        return None
    return float(value)


def parse_buckets(response: Dict, max_samples: int) -> List[GeoBucket]:
    """Turn an aggregation response into GeoBuckets.

    Cells missing either centroid average are dropped.
    """
    cells = (
        ((response or {}).get("aggregations") or {})
        .get(FILTER_AGG, {})
        .get(GRID_AGG, {})
        .get("buckets", [])
    )
    buckets: List[GeoBucket] = []
    for cell in cells:
        lat = _value(cell, LAT_AGG)
        lon = _value(cell, LON_AGG)
        if lat is None or lon is None:
            log.debug("Dropping cell %s without a centroid", cell.get("key"))
            continue
        ids = tuple(
            str(b["key"]) for b in (cell.get(IDS_AGG) or {}).get("buckets", [])
        )[:max_samples]
        buckets.append(GeoBucket(
            center_latitude=lat,
            center_longitude=lon,
            document_count=int(cell.get("doc_count", len(ids))),
            document_ids=ids,
        ))
    return buckets


class GeoAggregator:
    """Runs geohash aggregations over the metadata index."""

    def __init__(self, backend: SearchBackend, config: CalliopeConfig,
                 reporter: Optional[ErrorReporter] = None):
        self._backend = backend
        self._index = config.search.metadata_index
        self._reporter = reporter or ErrorReporter()

    def perform(
        self,
        viewport: Viewport,
        depth: int,
        query: CompiledQuery,
        max_samples: int,
    ) -> List[GeoBucket]:
        """Aggregate the documents matching *query* inside *viewport*.

        Returns ``[]`` (and reports) for a bounding box rejected locally or
        by the backend.  Transport failures
        (:class:`~calliope.errors.SearchUnavailableError`) propagate.
        """
        try:
            body = build_aggregation_request(viewport, depth, query, max_samples)
            response = self._backend.search(self._index, body)
        except InvalidGeometryError as exc:
            self._reporter.notify(f"Invalid map bounds: {exc}")
            return []
        except SearchRequestError as exc:
            self._reporter.notify(f"Aggregation rejected by the search backend: {exc}")
            return []

        buckets = parse_buckets(response, max_samples)
        log.debug("Aggregated %d cells at depth %d (zoom %.1f)",
                  len(buckets), depth, viewport.zoom)
        return buckets
