"""
In-process search backend.

Evaluates the subset of the Elasticsearch query and aggregation language
that Calliope sends, over documents held in memory.  Used by the test
suite and by the CLI's offline mode (``--data documents.json``).

Supported queries
─────────────────
  match_all, bool (must / filter / should / must_not), term, terms, range,
  exists, geo_bounding_box, geo_shape (point / polygon / envelope,
  relation intersects / within).

Supported aggregations
──────────────────────
  filter, geohash_grid, avg (field or ``doc['f'].lat`` script), terms.

Usage
-----
    backend = MemorySearchBackend()
    backend.index("metadata", "img-1", {"imageMetadata": {"position": {"lat": 1, "lon": 2}}})
    backend.search("metadata", {"query": {"match_all": {}}})
"""
from __future__ import annotations

import copy
import itertools
import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from shapely.geometry import MultiPolygon, Point, box, shape
from shapely.geometry.base import BaseGeometry

from ..errors import SearchRequestError
from . import geohash
from .backend import SearchBackend, parse_ttl

log = logging.getLogger(__name__)

_SCRIPT_COORD = re.compile(r"""doc\[['"](?P<field>[^'"]+)['"]\]\.(?P<part>lat|lon)""")

Doc = Tuple[str, Dict[str, Any]]


# ── Field helpers ─────────────────────────────────────────────────────

def get_field(source: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted field path inside a document source."""
    node: Any = source
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def geo_point(value: Any) -> Optional[Tuple[float, float]]:
    """Read a geo_point in any of its JSON forms as ``(lat, lon)``."""
    try:
        if isinstance(value, dict):
            return float(value["lat"]), float(value["lon"])
        if isinstance(value, (list, tuple)) and len(value) >= 2:
            return float(value[1]), float(value[0])
        if isinstance(value, str) and "," in value:
            lat, lon = value.split(",", 1)
            return float(lat), float(lon)
    except (KeyError, TypeError, ValueError):
        pass
    return None


def _geometry(value: Any) -> Optional[BaseGeometry]:
    """Document field → shapely geometry (geo_point or GeoJSON shape)."""
    if isinstance(value, dict) and "type" in value:
        try:
            return shape(_normalise_shape(value))
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            log.debug("Unreadable shape %r: %s", value, exc)
            return None
    pt = geo_point(value)
    if pt is None:
        return None
    return Point(pt[1], pt[0])


def _normalise_shape(raw: Dict[str, Any]) -> Dict[str, Any]:
    kind = raw["type"].lower()
    if kind == "envelope":
        (min_lon, max_lat), (max_lon, min_lat) = raw["coordinates"]
        if min_lon > max_lon:
            # crosses the antimeridian: west part plus east part
            return MultiPolygon([
                box(min_lon, min_lat, 180.0, max_lat),
                box(-180.0, min_lat, max_lon, max_lat),
            ]).__geo_interface__
        return box(min_lon, min_lat, max_lon, max_lat).__geo_interface__
    names = {
        "point": "Point", "polygon": "Polygon", "multipolygon": "MultiPolygon",
        "linestring": "LineString", "multipoint": "MultiPoint",
    }
    return {"type": names.get(kind, raw["type"]), "coordinates": raw["coordinates"]}


def _comparable(value: Any) -> Any:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _values(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _project(source: Dict[str, Any], includes: Sequence[str], excludes: Sequence[str]) -> Dict[str, Any]:
    if includes:
        projected: Dict[str, Any] = {}
        for path in includes:
            value = get_field(source, path)
            if value is None:
                continue
            node = projected
            parts = path.split(".")
            for part in parts[:-1]:
                node = node.setdefault(part, {})
            node[parts[-1]] = copy.deepcopy(value)
    else:
        projected = copy.deepcopy(source)
    for path in excludes:
        parts = path.split(".")
        node = projected
        for part in parts[:-1]:
            node = node.get(part) if isinstance(node, dict) else None
            if node is None:
                break
        if isinstance(node, dict):
            node.pop(parts[-1], None)
    return projected


def _source_filter(raw: Any) -> Tuple[bool, Sequence[str], Sequence[str]]:
    """Interpret a ``_source`` request value → (fetch, includes, excludes)."""
    if raw is None or raw is True:
        return True, (), ()
    if raw is False:
        return False, (), ()
    if isinstance(raw, str):
        return True, (raw,), ()
    if isinstance(raw, list):
        return True, raw, ()
    return True, raw.get("includes", ()), raw.get("excludes", ())


@dataclass
class _ScrollContext:
    index: str
    doc_ids: List[str]
    position: int
    page_size: int
    fetch: bool
    includes: Sequence[str]
    excludes: Sequence[str]
    expires_at: float


# ── Backend ───────────────────────────────────────────────────────────

class MemorySearchBackend(SearchBackend):
    """Search backend holding its documents in dictionaries.

    Thread-safe: background map workers and the CLI may query it
    concurrently; all state changes go through one lock.
    """

    def __init__(self, clock=time.monotonic):
        self._indices: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._scrolls: Dict[str, _ScrollContext] = {}
        self._scroll_ids = itertools.count(1)
        self._lock = threading.Lock()
        self._clock = clock

    # ── Loading ──────────────────────────────────────────────────────

    def index(self, index: str, doc_id: str, source: Dict[str, Any]) -> None:
        with self._lock:
            self._indices.setdefault(index, {})[doc_id] = copy.deepcopy(source)

    def load_json(self, path: Path) -> int:
        """Load ``{"index": {"doc_id": source, ...}, ...}`` from a JSON file."""
        with Path(path).open("r", encoding="utf-8") as f:
            raw = json.load(f)
        count = 0
        for index, docs in raw.items():
            for doc_id, source in docs.items():
                self.index(index, str(doc_id), source)
                count += 1
        log.info("Loaded %d documents from %s", count, path)
        return count

    def count(self, index: str) -> int:
        return len(self._indices.get(index, {}))

    @property
    def open_scrolls(self) -> int:
        return len(self._scrolls)

    # ── Query evaluation ─────────────────────────────────────────────

    def _matches(self, doc_id: str, source: Dict[str, Any], query: Dict[str, Any]) -> bool:
        if not query:
            return True
        if len(query) != 1:
            raise SearchRequestError(f"Query must have exactly one clause: {list(query)}")
        kind, raw = next(iter(query.items()))

        if kind == "match_all":
            return True
        if kind == "bool":
            return self._match_bool(doc_id, source, raw)
        if kind == "term":
            field, expected = next(iter(raw.items()))
            if isinstance(expected, dict):
                expected = expected.get("value")
            return expected in self._field_values(doc_id, source, field)
        if kind == "terms":
            field, expected = next(iter(raw.items()))
            have = self._field_values(doc_id, source, field)
            return any(v in have for v in expected)
        if kind == "exists":
            return get_field(source, raw["field"]) is not None
        if kind == "range":
            return self._match_range(source, raw)
        if kind == "geo_bounding_box":
            return self._match_bbox(source, raw)
        if kind == "geo_shape":
            return self._match_shape(source, raw)
        raise SearchRequestError(f"Unsupported query type: {kind}")

    @staticmethod
    def _field_values(doc_id: str, source: Dict[str, Any], field: str) -> List[Any]:
        if field == "_id":
            return [doc_id]
        return _values(get_field(source, field))

    def _match_bool(self, doc_id: str, source: Dict[str, Any], raw: Dict[str, Any]) -> bool:
        required = _values(raw.get("must")) + _values(raw.get("filter"))
        if not all(self._matches(doc_id, source, q) for q in required):
            return False
        if any(self._matches(doc_id, source, q) for q in _values(raw.get("must_not"))):
            return False
        should = _values(raw.get("should"))
        if should and not required:
            return any(self._matches(doc_id, source, q) for q in should)
        return True

    @staticmethod
    def _match_range(source: Dict[str, Any], raw: Dict[str, Any]) -> bool:
        field, bounds = next(iter(raw.items()))
        for raw in _values(get_field(source, field)):
            value = _comparable(raw)
            if value is None:
                continue
            ok = True
            for op, limit in bounds.items():
                if op not in ("gt", "gte", "lt", "lte"):
                    continue
                lim = _comparable(limit)
                if lim is None or type(lim) is not type(value):
                    ok = False
                    break
                if op == "gt" and not value > lim:
                    ok = False
                elif op == "gte" and not value >= lim:
                    ok = False
                elif op == "lt" and not value < lim:
                    ok = False
                elif op == "lte" and not value <= lim:
                    ok = False
            if ok:
                return True
        return False

    @staticmethod
    def _match_bbox(source: Dict[str, Any], raw: Dict[str, Any]) -> bool:
        field, corners = next(iter(raw.items()))
        top_left = geo_point(corners.get("top_left"))
        bottom_right = geo_point(corners.get("bottom_right"))
        if top_left is None or bottom_right is None:
            raise SearchRequestError("geo_bounding_box needs top_left and bottom_right")
        top, left = top_left
        bottom, right = bottom_right
        for lat, lon in (top_left, bottom_right):
            if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
                raise SearchRequestError(f"Bounding box corner out of range: {lat}, {lon}")
        if top < bottom:
            raise SearchRequestError(
                f"top latitude [{top}] cannot be less than bottom latitude [{bottom}]"
            )
        pt = geo_point(get_field(source, field))
        if pt is None:
            return False
        lat, lon = pt
        if not bottom <= lat <= top:
            return False
        if left <= right:
            return left <= lon <= right
        # Box crosses the antimeridian
        return lon >= left or lon <= right

    @staticmethod
    def _match_shape(source: Dict[str, Any], raw: Dict[str, Any]) -> bool:
        field, params = next(iter(raw.items()))
        try:
            query_geom = shape(_normalise_shape(params["shape"]))
        except (KeyError, ValueError, TypeError) as exc:
            raise SearchRequestError(f"Invalid geo_shape: {exc}") from exc
        doc_geom = _geometry(get_field(source, field))
        if doc_geom is None:
            return False
        relation = params.get("relation", "intersects")
        if relation == "intersects":
            return doc_geom.intersects(query_geom)
        if relation == "within":
            return doc_geom.within(query_geom)
        if relation == "contains":
            return doc_geom.contains(query_geom)
        if relation == "disjoint":
            return doc_geom.disjoint(query_geom)
        raise SearchRequestError(f"Unsupported geo_shape relation: {relation}")

    # ── Aggregations ─────────────────────────────────────────────────

    def _aggregate(self, docs: List[Doc], aggs: Dict[str, Any]) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        for name, raw in aggs.items():
            sub = raw.get("aggs") or raw.get("aggregations") or {}
            kinds = [k for k in raw if k not in ("aggs", "aggregations")]
            if len(kinds) != 1:
                raise SearchRequestError(f"Aggregation '{name}' must have one type")
            kind = kinds[0]
            params = raw[kind]

            if kind == "filter":
                kept = [(i, s) for i, s in docs if self._matches(i, s, params)]
                result = {"doc_count": len(kept)}
                result.update(self._aggregate(kept, sub))
            elif kind == "geohash_grid":
                result = {"buckets": self._geohash_grid(docs, params, sub)}
            elif kind == "avg":
                result = {"value": self._avg(docs, params)}
            elif kind == "terms":
                result = {"buckets": self._terms(docs, params, sub)}
            else:
                raise SearchRequestError(f"Unsupported aggregation type: {kind}")
            results[name] = result
        return results

    def _geohash_grid(self, docs: List[Doc], params: Dict[str, Any], sub: Dict[str, Any]) -> List[Dict]:
        precision = int(params.get("precision", 5))
        if not geohash.MIN_PRECISION <= precision <= geohash.MAX_PRECISION:
            raise SearchRequestError(f"Invalid geohash aggregation precision of {precision}")
        cells: Dict[str, List[Doc]] = {}
        for doc_id, source in docs:
            pt = geo_point(get_field(source, params["field"]))
            if pt is None:
                continue
            cells.setdefault(geohash.encode(pt[0], pt[1], precision), []).append((doc_id, source))
        ordered = sorted(cells.items(), key=lambda kv: (-len(kv[1]), kv[0]))
        ordered = ordered[: int(params.get("size", 10000))]
        buckets = []
        for key, members in ordered:
            bucket = {"key": key, "doc_count": len(members)}
            bucket.update(self._aggregate(members, sub))
            buckets.append(bucket)
        return buckets

    @staticmethod
    def _avg(docs: List[Doc], params: Dict[str, Any]) -> Optional[float]:
        script = params.get("script")
        if script is not None:
            text = script.get("source", "") if isinstance(script, dict) else str(script)
            m = _SCRIPT_COORD.search(text)
            if not m:
                raise SearchRequestError(f"Unsupported avg script: {text}")
            index = 0 if m.group("part") == "lat" else 1
            values = []
            for _, source in docs:
                pt = geo_point(get_field(source, m.group("field")))
                if pt is not None:
                    values.append(pt[index])
        else:
            values = []
            for _, source in docs:
                for raw in _values(get_field(source, params["field"])):
                    value = _comparable(raw)
                    if isinstance(value, float):
                        values.append(value)
        if not values:
            return None
        return float(np.mean(values))

    def _terms(self, docs: List[Doc], params: Dict[str, Any], sub: Dict[str, Any]) -> List[Dict]:
        groups: Dict[Any, List[Doc]] = {}
        for doc_id, source in docs:
            for value in self._field_values(doc_id, source, params["field"]):
                groups.setdefault(value, []).append((doc_id, source))
        ordered = sorted(groups.items(), key=lambda kv: (-len(kv[1]), str(kv[0])))
        ordered = ordered[: int(params.get("size", 10))]
        buckets = []
        for key, members in ordered:
            bucket = {"key": key, "doc_count": len(members)}
            bucket.update(self._aggregate(members, sub))
            buckets.append(bucket)
        return buckets

    # ── Contract ─────────────────────────────────────────────────────

    @staticmethod
    def _hit(index: str, doc_id: str, source: Dict[str, Any], fetch: bool,
             includes: Sequence[str], excludes: Sequence[str]) -> Dict[str, Any]:
        hit: Dict[str, Any] = {"_index": index, "_id": doc_id}
        if fetch:
            hit["_source"] = _project(source, includes, excludes)
        return hit

    def _matching(self, index: str, query: Dict[str, Any]) -> List[Doc]:
        docs = self._indices.get(index, {})
        return [(i, s) for i, s in docs.items() if self._matches(i, s, query)]

    def search(self, index: str, body: Dict, scroll: Optional[str] = None) -> Dict:
        body = body or {}
        with self._lock:
            matched = self._matching(index, body.get("query") or {"match_all": {}})
            fetch, includes, excludes = _source_filter(body.get("_source"))
            size = int(body.get("size", 10))
            start = int(body.get("from", 0))
            page = matched[start:start + size]

            response: Dict[str, Any] = {
                "hits": {
                    "total": {"value": len(matched), "relation": "eq"},
                    "hits": [self._hit(index, i, s, fetch, includes, excludes) for i, s in page],
                },
            }
            aggs = body.get("aggs") or body.get("aggregations")
            if aggs:
                response["aggregations"] = self._aggregate(matched, aggs)

            if scroll:
                scroll_id = f"scroll-{next(self._scroll_ids)}"
                self._scrolls[scroll_id] = _ScrollContext(
                    index=index,
                    doc_ids=[i for i, _ in matched],
                    position=start + len(page),
                    page_size=size,
                    fetch=fetch,
                    includes=includes,
                    excludes=excludes,
                    expires_at=self._clock() + parse_ttl(scroll),
                )
                response["_scroll_id"] = scroll_id
        return response

    def scroll(self, scroll_id: str, ttl: str) -> Dict:
        with self._lock:
            ctx = self._scrolls.get(scroll_id)
            now = self._clock()
            if ctx is None or ctx.expires_at < now:
                self._scrolls.pop(scroll_id, None)
                raise SearchRequestError(f"No search context found for id [{scroll_id}]", status=404)
            ctx.expires_at = now + parse_ttl(ttl)
            docs = self._indices.get(ctx.index, {})
            ids = ctx.doc_ids[ctx.position:ctx.position + ctx.page_size]
            ctx.position += len(ids)
            hits = [
                self._hit(ctx.index, i, docs[i], ctx.fetch, ctx.includes, ctx.excludes)
                for i in ids if i in docs
            ]
            return {
                "_scroll_id": scroll_id,
                "hits": {"total": {"value": len(ctx.doc_ids), "relation": "eq"}, "hits": hits},
            }

    def clear_scroll(self, scroll_id: str) -> bool:
        with self._lock:
            return self._scrolls.pop(scroll_id, None) is not None

    def mget(
        self,
        index: str,
        ids: Sequence[str],
        includes: Sequence[str] = (),
        excludes: Sequence[str] = (),
    ) -> List[Dict]:
        with self._lock:
            docs = self._indices.get(index, {})
            out = []
            for doc_id in ids:
                if doc_id in docs:
                    out.append({
                        "_index": index, "_id": doc_id, "found": True,
                        "_source": _project(docs[doc_id], includes, excludes),
                    })
                else:
                    out.append({"_index": index, "_id": doc_id, "found": False})
            return out

    def msearch(self, index: str, bodies: Sequence[Dict]) -> List[Dict]:
        responses = []
        for body in bodies:
            try:
                resp = self.search(index, body)
                resp["status"] = 200
            except SearchRequestError as exc:
                resp = {"error": {"reason": str(exc)}, "status": exc.status}
            responses.append(resp)
        return responses

    def bulk_delete(self, index: str, ids: Iterable[str]) -> bool:
        with self._lock:
            docs = self._indices.get(index, {})
            for doc_id in ids:
                docs.pop(doc_id, None)
        return True

    def delete(self, index: str, doc_id: str) -> bool:
        with self._lock:
            return self._indices.get(index, {}).pop(doc_id, None) is not None
