"""
Command-line entry point for the map engine.

Runs the same aggregation, site lookup and catalog operations the map
view uses, against a live cluster or an in-memory copy loaded from JSON.

Usage
-----
    calliope --data docs.json aggregate --north 41 --west -106 --south 39 --east -104 --zoom 6
    calliope detect-sites -- 40.1,-105.2 10,20
    calliope paths --terms collectionID=c-1
"""
from __future__ import annotations

import argparse
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .catalog import Catalog
from .config import CalliopeConfig, load_config
from .errors import CalliopeError, ErrorReporter
from .geo.aggregation import GeoAggregator
from .geo.sites import SiteDetector
from .geo.viewport import Viewport
from .logger import setup_logging
from .query.compiler import CompiledQuery, QueryConditionList
from .query.conditions import (
    ALTITUDE_FIELD,
    DateIntervalCondition,
    PolygonCondition,
    RangeCondition,
    TermsCondition,
)
from .search.backend import SearchBackend
from .search.http_backend import HttpSearchBackend
from .search.memory import MemorySearchBackend

log = logging.getLogger(__name__)


def make_backend(cfg: CalliopeConfig, data: Optional[Path]) -> SearchBackend:
    """In-memory backend loaded from *data*, or the configured cluster."""
    if data is not None:
        backend = MemorySearchBackend()
        backend.load_json(data)
        return backend
    return HttpSearchBackend(cfg.search)


def parse_point(text: str) -> Tuple[float, float]:
    """``"lat,lon"`` → ``(lat, lon)``."""
    try:
        lat, lon = (float(v) for v in text.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected LAT,LON, got {text!r}")
    return lat, lon


def parse_polygon(text: str) -> List[Tuple[float, float]]:
    """``"lat,lon;lat,lon;..."`` → corner list."""
    return [parse_point(p) for p in text.split(";") if p.strip()]


def parse_terms(text: str) -> TermsCondition:
    """``"field=v1,v2"`` → terms condition."""
    field, sep, values = text.partition("=")
    if not sep or not field or not values:
        raise argparse.ArgumentTypeError(f"expected FIELD=V1[,V2...], got {text!r}")
    return TermsCondition(field, values.split(","))


def parse_date(text: str) -> datetime:
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an ISO date, got {text!r}")


def build_query(args: argparse.Namespace) -> CompiledQuery:
    conditions = QueryConditionList()
    for cond in args.terms or []:
        conditions.append(cond)
    if args.min_altitude is not None or args.max_altitude is not None:
        conditions.append(RangeCondition(ALTITUDE_FIELD, args.min_altitude, args.max_altitude))
    if args.after is not None or args.before is not None:
        conditions.append(DateIntervalCondition(args.after, args.before))
    if args.polygon:
        conditions.append(PolygonCondition(args.polygon))
    return conditions.compile()


def _add_filter_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--terms", type=parse_terms, action="append",
                        help="Match FIELD=V1,V2 (repeatable).")
    parser.add_argument("--min-altitude", type=float, default=None)
    parser.add_argument("--max-altitude", type=float, default=None)
    parser.add_argument("--after", type=parse_date, default=None,
                        help="Taken on or after this ISO date/time.")
    parser.add_argument("--before", type=parse_date, default=None,
                        help="Taken on or before this ISO date/time.")
    parser.add_argument("--polygon", type=parse_polygon, default=None,
                        metavar="LAT,LON;LAT,LON;...",
                        help="Polygon corners in drawing order (use --polygon=... for negative values).")


def run_aggregate(args: argparse.Namespace, backend: SearchBackend,
                  cfg: CalliopeConfig, reporter: ErrorReporter) -> int:
    viewport = Viewport.from_corners(args.north, args.west, args.south, args.east, args.zoom)
    samples = args.samples or cfg.map.max_samples_per_bucket
    buckets = GeoAggregator(backend, cfg, reporter).perform(
        viewport, viewport.depth, build_query(args), samples
    )
    print(f"{len(buckets)} cells at depth {viewport.depth}")
    for b in buckets:
        print(f"{b.center_latitude:10.5f} {b.center_longitude:11.5f} "
              f"{b.document_count:8d}  {','.join(b.document_ids)}")
    return 0


def run_detect_sites(args: argparse.Namespace, backend: SearchBackend,
                     cfg: CalliopeConfig, reporter: ErrorReporter) -> int:
    codes = SiteDetector(backend, cfg, reporter).detect(args.points)
    for (lat, lon), code in zip(args.points, codes):
        print(f"{lat:.5f},{lon:.5f}  {code or '-'}")
    return 0


def run_sites(args: argparse.Namespace, backend: SearchBackend,
              cfg: CalliopeConfig, reporter: ErrorReporter) -> int:
    for site in Catalog(backend, cfg, reporter).pull_sites():
        lat, lon = site.center
        print(f"{site.code:20s} {lat:9.4f} {lon:10.4f}  {site.name}")
    return 0


def run_collections(args: argparse.Namespace, backend: SearchBackend,
                    cfg: CalliopeConfig, reporter: ErrorReporter) -> int:
    for coll in Catalog(backend, cfg, reporter).pull_collections():
        print(f"{coll.id:38s} {coll.name}  ({coll.organization})")
    return 0


def run_remove_collection(args: argparse.Namespace, backend: SearchBackend,
                          cfg: CalliopeConfig, reporter: ErrorReporter) -> int:
    ok = Catalog(backend, cfg, reporter).remove_collection(args.collection_id)
    return 0 if ok else 1


def run_paths(args: argparse.Namespace, backend: SearchBackend,
              cfg: CalliopeConfig, reporter: ErrorReporter) -> int:
    for path in Catalog(backend, cfg, reporter).image_paths_matching(build_query(args)):
        print(path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="calliope",
        description=(
            "Calliope map engine.\n"
            "Query a geo-tagged image index the way the map view does:\n"
            "  aggregate / detect-sites    – geohash buckets, site lookups\n"
            "  sites / collections         – reference data\n"
            "  remove-collection / paths   – maintenance and export"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=Path, default=None,
                        help="JSON config file (default: $CALLIOPE_CONFIG).")
    parser.add_argument("--data", type=Path, default=None,
                        help="Load documents from this JSON file into an in-memory backend.")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-dir", type=Path, default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("aggregate", help="Geohash-aggregate images in a bounding box.")
    p.add_argument("--north", type=float, required=True)
    p.add_argument("--west", type=float, required=True)
    p.add_argument("--south", type=float, required=True)
    p.add_argument("--east", type=float, required=True)
    p.add_argument("--zoom", type=float, required=True)
    p.add_argument("--samples", type=int, default=None,
                   help="Document IDs sampled per cell.")
    _add_filter_args(p)
    p.set_defaults(func=run_aggregate)

    p = sub.add_parser("detect-sites", help="Site code for each LAT,LON point (put -- before negative values).")
    p.add_argument("points", type=parse_point, nargs="+", metavar="LAT,LON")
    p.set_defaults(func=run_detect_sites)

    p = sub.add_parser("sites", help="List reference sites.")
    p.set_defaults(func=run_sites)

    p = sub.add_parser("collections", help="List image collections.")
    p.set_defaults(func=run_collections)

    p = sub.add_parser("remove-collection", help="Delete a collection and all its images.")
    p.add_argument("collection_id")
    p.set_defaults(func=run_remove_collection)

    p = sub.add_parser("paths", help="Storage paths of images matching the filters.")
    _add_filter_args(p)
    p.set_defaults(func=run_paths)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_dir)

    cfg = load_config(args.config)
    log.debug("Running %s against %s", args.command, args.data or cfg.search.base_url)
    reporter = ErrorReporter()
    backend = make_backend(cfg, args.data)
    try:
        return args.func(args, backend, cfg, reporter)
    except CalliopeError as exc:
        reporter.notify(f"{args.command} failed: {exc}")
        return 1
    finally:
        backend.close()


if __name__ == "__main__":
    raise SystemExit(main())
