"""
Selection enrichment — metadata rows for the bucket the user clicked.

A bucket only carries a sample of document IDs.  When it is selected, the
sampled documents are fetched in one multi-get with a narrow source
projection and turned into display rows for the side table.

Usage
-----
    enricher = SelectionEnricher(backend, cfg, lambda: names_by_collection_id)
    rows = enricher.lookup(bucket)
    for row in rows:
        print(row.name, row.collection_name, row.altitude)
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from ..config import CalliopeConfig
from ..geo.aggregation import GeoBucket
from ..search.backend import SearchBackend

log = logging.getLogger(__name__)

NOT_FOUND = "Not Found"

ROW_INCLUDES: Tuple[str, ...] = (
    "storagePath",
    "collectionID",
    "imageMetadata.altitude",
    "imageMetadata.cameraModel",
    "imageMetadata.dateTaken",
)
ROW_EXCLUDES: Tuple[str, ...] = (
    "imageMetadata.dayOfWeekTaken",
    "imageMetadata.dayOfYearTaken",
    "imageMetadata.droneMaker",
    "imageMetadata.hourTaken",
    "imageMetadata.monthTaken",
    "imageMetadata.neonSiteCode",
    "imageMetadata.position",
    "imageMetadata.rotation",
    "imageMetadata.speed",
    "imageMetadata.yearTaken",
)


@dataclass(frozen=True)
class ImageRow:
    name: str                 # file name of the storage path
    collection_name: str
    altitude: float           # NaN when the index value is unreadable
    camera_model: str
    date_taken: datetime


def file_name(path: str) -> str:
    return path.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]


def parse_altitude(value: object) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return math.nan


class SelectionEnricher:
    """Resolves a selected bucket's sample IDs into :class:`ImageRow` s."""

    def __init__(
        self,
        backend: SearchBackend,
        config: CalliopeConfig,
        collection_names: Callable[[], Dict[str, str]] = dict,
    ):
        self._backend = backend
        self._index = config.search.metadata_index
        self._date_format = config.map.index_date_format
        self._collection_names = collection_names
        self._last: Optional[Tuple[GeoBucket, List[ImageRow]]] = None

    def lookup(self, bucket: Optional[GeoBucket]) -> List[ImageRow]:
        """Rows for *bucket*; re-selecting the same bucket is served from cache."""
        if bucket is None or not bucket.document_ids:
            return []
        if self._last is not None and self._last[0] == bucket:
            return list(self._last[1])

        docs = self._backend.mget(self._index, bucket.document_ids,
                                  includes=ROW_INCLUDES, excludes=ROW_EXCLUDES)
        names = self._collection_names()
        rows = []
        for doc in docs:
            row = self._row(doc, names)
            if row is not None:
                rows.append(row)

        log.debug("Resolved %d/%d sampled documents", len(rows), len(bucket.document_ids))
        self._last = (bucket, rows)
        return list(rows)

    def _row(self, doc: Dict, names: Dict[str, str]) -> Optional[ImageRow]:
        if not doc.get("found"):
            return None
        source = doc.get("_source") or {}
        meta = source.get("imageMetadata")
        if "storagePath" not in source or "collectionID" not in source or not isinstance(meta, dict):
            log.debug("Skipping %s: incomplete source", doc.get("_id"))
            return None
        if not all(k in meta for k in ("altitude", "cameraModel", "dateTaken")):
            log.debug("Skipping %s: incomplete image metadata", doc.get("_id"))
            return None
        try:
            taken = datetime.strptime(str(meta["dateTaken"]), self._date_format)
        except ValueError:
            log.debug("Skipping %s: unreadable date %r", doc.get("_id"), meta["dateTaken"])
            return None
        collection_id = str(source["collectionID"])
        return ImageRow(
            name=file_name(str(source["storagePath"])),
            collection_name=names.get(collection_id, NOT_FOUND),
            altitude=parse_altitude(meta["altitude"]),
            camera_model=str(meta["cameraModel"]),
            date_taken=taken,
        )
