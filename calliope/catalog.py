"""
Reference data and bulk maintenance on the search backend.

  * sites        — reference sites with boundary polygons (``neon_sites``)
  * collections  — named image collections (``collections``)
  * removal      — delete a collection and every image indexed under it
  * paths        — storage paths of every image matching a query

Everything here enumerates through the cursor paginator, so cursors are
released even when a page fails half way.

Usage
-----
    catalog = Catalog(backend, cfg, reporter)
    sites = catalog.pull_sites()
    names = collection_names(catalog.pull_collections())
    catalog.remove_collection("c-42")
"""
from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from shapely.geometry import Polygon

from .config import CalliopeConfig
from .errors import CalliopeError, ErrorReporter
from .query.compiler import CompiledQuery
from .query.conditions import COLLECTION_FIELD
from .search.backend import SearchBackend
from .search.cursor import CursorPaginator

log = logging.getLogger(__name__)

STORAGE_PATH_FIELD = "storagePath"


@dataclass
class Site:
    """A reference site and its boundary."""

    code: str
    name: str
    center: Tuple[float, float]      # (lat, lon)
    boundary: Polygon                # lon/lat, holes preserved

    @classmethod
    def from_source(cls, source: Dict) -> Optional["Site"]:
        """Build a site from a ``neon_sites`` document, or None if malformed."""
        details = source.get("site") or {}
        boundary = source.get("boundary") or {}
        rings = boundary.get("coordinates") if isinstance(boundary, dict) else None
        code = details.get("siteCode")
        if not isinstance(code, str) or not rings:
            return None
        try:
            polygon = Polygon(
                [tuple(c[:2]) for c in rings[0]],
                [[tuple(c[:2]) for c in hole] for hole in rings[1:]],
            )
            center = (float(details.get("siteLatitude")),
                      float(details.get("siteLongitude")))
        except (TypeError, ValueError, IndexError) as exc:
            log.debug("Skipping site %s: %s", code, exc)
            return None
        return cls(code=code, name=details.get("siteName") or code,
                   center=center, boundary=polygon)

    def outer_ring(self) -> List[Tuple[float, float]]:
        """Boundary exterior as ``(lat, lon)`` pairs, for drawing."""
        return [(lat, lon) for lon, lat in self.boundary.exterior.coords]


@dataclass
class ImageCollection:
    id: str
    name: str
    organization: str = ""
    contact_info: str = ""
    description: str = ""

    @classmethod
    def from_source(cls, doc_id: str, source: Dict) -> "ImageCollection":
        return cls(
            id=source.get("id") or doc_id,
            name=source.get("name") or "",
            organization=source.get("organization") or "",
            contact_info=source.get("contactInfo") or "",
            description=source.get("description") or "",
        )


def collection_names(collections: Iterable[ImageCollection]) -> Dict[str, str]:
    """Collection ID → display name lookup."""
    return {c.id: c.name for c in collections}


class Catalog:
    """Sites, collections and bulk deletes."""

    def __init__(self, backend: SearchBackend, config: CalliopeConfig,
                 reporter: Optional[ErrorReporter] = None):
        self._backend = backend
        self._cfg = config
        self._paginator = CursorPaginator(backend, config.map.scroll_ttl)
        self._reporter = reporter or ErrorReporter()

    def pull_sites(self) -> List[Site]:
        sites: List[Site] = []
        skipped = 0
        for page in self._paginator.scan(self._cfg.search.sites_index, None,
                                         self._cfg.map.reference_page_size):
            for hit in page:
                site = Site.from_source(hit.get("_source") or {})
                if site is None:
                    skipped += 1
                    continue
                sites.append(site)
        if skipped:
            log.debug("Skipped %d malformed site documents", skipped)
        log.info("Pulled %d sites", len(sites))
        return sites

    def pull_collections(self) -> List[ImageCollection]:
        collections = [
            ImageCollection.from_source(hit["_id"], hit.get("_source") or {})
            for page in self._paginator.scan(self._cfg.search.collections_index, None,
                                             self._cfg.map.reference_page_size)
            for hit in page
        ]
        log.info("Pulled %d collections", len(collections))
        return collections

    def remove_collection(self, collection_id: str) -> bool:
        """Delete every image of a collection, then the collection itself.

        Failures are reported; returns True only if everything was removed.
        """
        metadata_index = self._cfg.search.metadata_index
        ok = True
        removed = 0
        pages = self._paginator.scan(
            metadata_index,
            {"terms": {COLLECTION_FIELD: [collection_id]}},
            self._cfg.map.delete_page_size,
            source=False,
        )
        try:
            with closing(pages):
                for page in pages:
                    ids = [hit["_id"] for hit in page]
                    if not self._backend.bulk_delete(metadata_index, ids):
                        self._reporter.notify(
                            f"Some images of collection '{collection_id}' could not be removed"
                        )
                        ok = False
                    removed += len(ids)

            if not self._backend.delete(self._cfg.search.collections_index, collection_id):
                self._reporter.notify(f"Collection '{collection_id}' was not found")
                ok = False
        except CalliopeError as exc:
            self._reporter.notify(f"Error removing collection '{collection_id}': {exc}")
            return False

        log.info("Removed collection %s (%d images)", collection_id, removed)
        return ok

    def image_paths_matching(self, query: CompiledQuery) -> List[str]:
        """Unique storage paths of every image matching *query*, sorted."""
        paths = set()
        for page in self._paginator.scan(
            self._cfg.search.metadata_index,
            query.body,
            self._cfg.map.path_page_size,
            source=[STORAGE_PATH_FIELD],
        ):
            for hit in page:
                path = (hit.get("_source") or {}).get(STORAGE_PATH_FIELD)
                if isinstance(path, str):
                    paths.add(path)
        return sorted(paths)
