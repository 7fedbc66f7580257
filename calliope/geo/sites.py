"""
Site detection — which reference site (if any) each point falls inside.

Reference sites are stored as documents with a GeoJSON ``boundary``
polygon.  Detecting the sites for N points is N independent
point-intersects-boundary queries, sent together as a single multi-search
so the whole batch costs one round trip.  Answers come back in request
order and are correlated by position.

Usage
-----
    detector = SiteDetector(backend, cfg, reporter)
    detector.detect([(40.1, -105.2), (0.0, 0.0)])   # → ["NEON_D10_CPER", None]
    detector.site_codes_within(viewport)             # → ["NEON_D10_CPER", ...]
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import CalliopeConfig
from ..errors import ErrorReporter, InvariantViolation
from ..search.backend import SearchBackend, hits_of
from ..search.cursor import CursorPaginator
from .viewport import Viewport

log = logging.getLogger(__name__)

BOUNDARY_FIELD = "boundary"
SITE_CODE_PATH = "site.siteCode"


def _point_query(lat: float, lon: float) -> Dict:
    return {
        "size": 1,
        "_source": [SITE_CODE_PATH],
        "query": {
            "geo_shape": {
                BOUNDARY_FIELD: {
                    "shape": {"type": "point", "coordinates": [lon, lat]},
                    "relation": "intersects",
                }
            }
        },
    }


def _site_code(hit: Dict) -> Optional[str]:
    code = ((hit.get("_source") or {}).get("site") or {}).get("siteCode")
    return code if isinstance(code, str) else None


class SiteDetector:
    """Point-in-site lookups against the sites index."""

    def __init__(self, backend: SearchBackend, config: CalliopeConfig,
                 reporter: Optional[ErrorReporter] = None):
        self._backend = backend
        self._index = config.search.sites_index
        self._page_size = config.map.reference_page_size
        self._paginator = CursorPaginator(backend, config.map.scroll_ttl)
        self._reporter = reporter or ErrorReporter()

    def detect(self, points: Sequence[Tuple[float, float]]) -> List[Optional[str]]:
        """Return one site code (or None) per ``(lat, lon)`` point, in order.

        Raises
        ------
        InvariantViolation
            If the backend answers a different number of queries than were
            sent.  The violation is reported before it is raised.
        """
        if not points:
            return []
        bodies = [_point_query(lat, lon) for lat, lon in points]
        responses = self._backend.msearch(self._index, bodies)

        if len(responses) != len(points):
            message = (f"Site detection got {len(responses)} answers "
                       f"for {len(points)} points")
            self._reporter.notify(message)
            raise InvariantViolation(message)

        codes: List[Optional[str]] = []
        for point, response in zip(points, responses):
            if "error" in response:
                log.warning("Site lookup for %s failed: %s", point, response["error"])
                codes.append(None)
                continue
            hits = hits_of(response)
            codes.append(_site_code(hits[0]) if hits else None)
        return codes

    def site_codes_within(self, viewport: Viewport) -> List[str]:
        """Codes of every site whose boundary intersects *viewport*."""
        query = {
            "geo_shape": {
                BOUNDARY_FIELD: {"shape": viewport.envelope(), "relation": "intersects"}
            }
        }
        codes: List[str] = []
        for page in self._paginator.scan(self._index, query, self._page_size,
                                         source=[SITE_CODE_PATH]):
            for hit in page:
                code = _site_code(hit)
                if code is not None:
                    codes.append(code)
        log.debug("%d sites intersect the viewport", len(codes))
        return codes
