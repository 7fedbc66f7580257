"""
Abstract search backend contract.

The map engine never talks to a specific product directly.  It needs a
document store that can:

  (a) run a filtered query returning a hit count and optional hit sources,
  (b) run nested aggregations (filter → geohash grid → avg / terms),
  (c) open, continue and clear scroll cursors,
  (d) multi-get documents by ID with source include/exclude projection,
  (e) multi-search (independent queries in one round trip),

plus bulk and single deletes for collection removal.  Request bodies and
responses use the Elasticsearch JSON shapes so the parsing code is shared
between :class:`~calliope.search.http_backend.HttpSearchBackend` and
:class:`~calliope.search.memory.MemorySearchBackend`.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence


class SearchBackend(ABC):
    """Document store used by every bulk read and aggregation."""

    @abstractmethod
    def search(self, index: str, body: Dict, scroll: Optional[str] = None) -> Dict:
        """Run a search.  With *scroll* set, the response carries ``_scroll_id``."""

    @abstractmethod
    def scroll(self, scroll_id: str, ttl: str) -> Dict:
        """Fetch the next page of a scroll cursor."""

    @abstractmethod
    def clear_scroll(self, scroll_id: str) -> bool:
        """Release a scroll cursor.  Returns True when the backend freed it."""

    @abstractmethod
    def mget(
        self,
        index: str,
        ids: Sequence[str],
        includes: Sequence[str] = (),
        excludes: Sequence[str] = (),
    ) -> List[Dict]:
        """Fetch documents by ID.  One entry per ID, ``found`` False if missing."""

    @abstractmethod
    def msearch(self, index: str, bodies: Sequence[Dict]) -> List[Dict]:
        """Run several searches in one round trip; responses in request order."""

    @abstractmethod
    def bulk_delete(self, index: str, ids: Sequence[str]) -> bool:
        """Delete many documents.  Returns False if any item failed."""

    @abstractmethod
    def delete(self, index: str, doc_id: str) -> bool:
        """Delete one document.  Returns True if it existed and was removed."""

    def close(self) -> None:
        """Release connections held by the backend."""


def hits_of(response: Dict) -> List[Dict]:
    """Return the hit list of a search / scroll response (empty if absent)."""
    return ((response or {}).get("hits") or {}).get("hits") or []


def total_of(response: Dict) -> int:
    """Return the total hit count, accepting both int and ``{"value": n}``."""
    total = ((response or {}).get("hits") or {}).get("total", 0)
    if isinstance(total, dict):
        return int(total.get("value", 0))
    return int(total or 0)


_TTL = re.compile(r"^(?P<n>\d+)(?P<unit>ms|s|m|h|d)$")
_TTL_SECONDS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_ttl(ttl: str) -> float:
    """Convert an Elasticsearch time value (``"1m"``, ``"30s"``) to seconds."""
    m = _TTL.match(ttl.strip())
    if not m:
        raise ValueError(f"Invalid time value: {ttl!r}")
    return int(m.group("n")) * _TTL_SECONDS[m.group("unit")]
