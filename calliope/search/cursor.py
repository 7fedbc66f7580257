"""
Cursor paginator — scroll-style paged enumeration of large result sets.

A cursor is opened by an initial paged search, advanced with repeated
``advance`` calls until a page comes back empty, and must then be closed
to release the backend's search context.  ``scan`` wraps the whole
sequence in a ``try/finally`` so the cursor is closed exactly once even if
the consumer raises halfway through.

Usage
-----
    paginator = CursorPaginator(backend)
    for page in paginator.scan("collections", {"match_all": {}}, page_size=10):
        for hit in page:
            print(hit["_id"])

    cursor, page = paginator.open("metadata", query, page_size=500)
    try:
        while page:
            handle(page)
            page = paginator.advance(cursor)
    finally:
        paginator.close(cursor)
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

from ..errors import CalliopeError, CursorError
from .backend import SearchBackend, hits_of, parse_ttl

log = logging.getLogger(__name__)

SourceSpec = Union[bool, Sequence[str], Dict[str, Sequence[str]]]


@dataclass
class Cursor:
    """An open scroll over one query.  Page size is fixed for its lifetime."""
    scroll_id: str
    index: str
    page_size: int
    ttl: str
    expires_at: float
    pages_read: int = 1
    closed: bool = field(default=False)

    @property
    def expired(self) -> bool:
        return time.monotonic() > self.expires_at


class CursorPaginator:
    """Open / continue / close primitive shared by every bulk read."""

    def __init__(self, backend: SearchBackend, default_ttl: str = "1m"):
        self._backend = backend
        self._default_ttl = default_ttl

    def open(
        self,
        index: str,
        query: Optional[Dict],
        page_size: int,
        ttl: Optional[str] = None,
        source: SourceSpec = True,
    ) -> Tuple[Cursor, List[Dict]]:
        """Run the initial search and return the cursor with its first page."""
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got {page_size}")
        ttl = ttl or self._default_ttl
        body = {
            "size": page_size,
            "_source": source,
            "query": query or {"match_all": {}},
        }
        resp = self._backend.search(index, body, scroll=ttl)
        scroll_id = resp.get("_scroll_id")
        if not scroll_id:
            raise CalliopeError(f"Backend returned no scroll id for '{index}'")
        cursor = Cursor(
            scroll_id=scroll_id,
            index=index,
            page_size=page_size,
            ttl=ttl,
            expires_at=time.monotonic() + parse_ttl(ttl),
        )
        page = hits_of(resp)
        log.debug("Opened cursor on %s (page size %d, first page %d)",
                  index, page_size, len(page))
        return cursor, page

    def advance(self, cursor: Cursor) -> List[Dict]:
        """Fetch the next page.  An empty page means the scroll is exhausted."""
        if cursor.closed:
            raise CursorError(f"Cursor on '{cursor.index}' is already closed")
        if cursor.expired:
            raise CursorError(f"Cursor on '{cursor.index}' expired (ttl {cursor.ttl})")
        resp = self._backend.scroll(cursor.scroll_id, cursor.ttl)
        # The backend may hand out a new id on every page
        cursor.scroll_id = resp.get("_scroll_id") or cursor.scroll_id
        cursor.expires_at = time.monotonic() + parse_ttl(cursor.ttl)
        cursor.pages_read += 1
        return hits_of(resp)

    def close(self, cursor: Cursor) -> bool:
        """Release the cursor.  Returns the backend's acknowledgement."""
        if cursor.closed:
            raise CursorError(f"Cursor on '{cursor.index}' closed twice")
        cursor.closed = True
        ack = self._backend.clear_scroll(cursor.scroll_id)
        if not ack:
            log.warning("Backend did not acknowledge closing cursor on %s", cursor.index)
        return ack

    def _close_quietly(self, cursor: Cursor) -> None:
        try:
            self.close(cursor)
        except Exception as exc:
            # Reported, never retried
            log.error("Could not close cursor on %s: %s", cursor.index, exc)

    def scan(
        self,
        index: str,
        query: Optional[Dict],
        page_size: int,
        ttl: Optional[str] = None,
        source: SourceSpec = True,
    ) -> Iterator[List[Dict]]:
        """Yield every non-empty page of *query*, always closing the cursor."""
        cursor, page = self.open(index, query, page_size, ttl=ttl, source=source)
        try:
            while page:
                yield page
                page = self.advance(cursor)
        finally:
            self._close_quietly(cursor)
