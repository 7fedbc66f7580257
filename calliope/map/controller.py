"""
Map controller — wires the engine to a map view.

The controller owns the condition list, the compiled query, the overlay
draw list and three single-flight workers:

  buckets    pan end / zoom change / "query" → geohash aggregation
             → reconcile markers → ``buckets_applied``
  sites      pan end / zoom change → sites intersecting the viewport
             → boundary polygons (zoomed in) or pins → ``sites_updated``
  selection  marker clicked → multi-get of sampled documents → ``rows_ready``

plus a fourth one-shot worker that pulls the reference sites and
collections at startup.  The map view itself only has to supply the
current viewport and forward its pan / zoom / click events.

Signals
-------
buckets_applied(list)
    Live :class:`MarkerHandle` list after each applied aggregation run.
rows_ready(list)
    :class:`ImageRow` list for the selected marker (empty on deselect).
sites_updated(list)
    :class:`SiteOverlay` list currently drawn.
error_reported(str)
    Every message sent through the controller's :class:`ErrorReporter`.

Usage
-----
    controller = MapController(backend, cfg, viewport_source=map_view.viewport)
    controller.buckets_applied.connect(map_view.draw_markers)
    controller.refresh_reference_data()
    map_view.panFinished.connect(controller.on_view_changed)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from PyQt5 import QtCore

from ..catalog import Catalog, Site, collection_names
from ..config import CalliopeConfig
from ..errors import ErrorReporter, InvariantViolation
from ..geo.aggregation import GeoAggregator, GeoBucket
from ..geo.sites import SiteDetector
from ..geo.viewport import Viewport
from ..query.compiler import CompiledQuery, QueryConditionList
from ..query.conditions import FilterCondition, PolygonCondition
from ..search.backend import SearchBackend
from .layers import LayeredDrawList, MapLayer
from .markers import BucketReconciler, MarkerHandle
from .selection import SelectionEnricher
from .workers import Dispatcher, SingleFlightWorker, Spawner

log = logging.getLogger(__name__)


@dataclass(eq=False)
class TileProvider:
    url_template: str


@dataclass(eq=False)
class SiteOverlay:
    """A reference site drawn either as its boundary or as a pin."""
    site: Site
    as_polygon: bool

    @property
    def points(self) -> List[Tuple[float, float]]:
        if self.as_polygon:
            return self.site.outer_ring()
        return [self.site.center]


@dataclass(eq=False)
class QueryCorner:
    """Drag handle for one corner of a query polygon."""
    condition: PolygonCondition
    index: int


@dataclass
class _QueryOverlay:
    boundary: PolygonCondition
    corners: List[QueryCorner] = field(default_factory=list)


class MapController(QtCore.QObject):

    buckets_applied = QtCore.pyqtSignal(object)   # list[MarkerHandle]
    rows_ready = QtCore.pyqtSignal(object)        # list[ImageRow]
    sites_updated = QtCore.pyqtSignal(object)     # list[SiteOverlay]
    error_reported = QtCore.pyqtSignal(str)

    def __init__(
        self,
        backend: SearchBackend,
        config: CalliopeConfig,
        viewport_source: Callable[[], Viewport],
        reporter: Optional[ErrorReporter] = None,
        spawn: Optional[Spawner] = None,
        dispatch: Optional[Dispatcher] = None,
        parent: Optional[QtCore.QObject] = None,
    ):
        super().__init__(parent)
        self._cfg = config
        self._viewport_source = viewport_source

        self.reporter = reporter or ErrorReporter()
        self.reporter.add_listener(self.error_reported.emit)

        self.layers = LayeredDrawList()
        self.tile_provider = TileProvider(config.map.tile_url)
        self.layers.add(self.tile_provider, MapLayer.TILE_PROVIDER)

        self.conditions = QueryConditionList()
        self.conditions.add_listener(self._on_condition_changed)
        self.query: CompiledQuery = self.conditions.compile()
        self._query_overlays: Dict[int, _QueryOverlay] = {}

        self.sites: Dict[str, Site] = {}
        self._collection_names: Dict[str, str] = {}
        self._site_overlays: List[SiteOverlay] = []

        self._aggregator = GeoAggregator(backend, config, self.reporter)
        self._detector = SiteDetector(backend, config, self.reporter)
        self._enricher = SelectionEnricher(backend, config, lambda: self._collection_names)
        self._catalog = Catalog(backend, config, self.reporter)

        self.reconciler = BucketReconciler(
            on_added=lambda m: self.layers.add(m, MapLayer.CIRCLES),
            on_removed=self.layers.remove,
        )

        # dispatch may be None here; each worker then builds its own invoker
        # on this (interactive) thread
        def worker(name, prepare, work, on_result):
            return SingleFlightWorker(
                name, prepare, work, on_result,
                on_error=lambda exc: self.reporter.notify(f"{name} update failed: {exc}"),
                spawn=spawn, dispatch=dispatch,
            )

        self.bucket_worker = worker("buckets", self._prepare_buckets,
                                    self._aggregate, self._apply_buckets)
        self.site_worker = worker("sites", self._viewport_source,
                                  self._sites_within, self._apply_sites)
        self.selection_worker = worker("selection", self._prepare_selection,
                                       self._enricher.lookup, self.rows_ready.emit)
        self.reference_worker = worker("reference", lambda: None,
                                       self._pull_reference, self._apply_reference)

    # ── Events from the map view ─────────────────────────────────────

    def on_view_changed(self) -> None:
        """Pan finished or zoom changed."""
        self.bucket_worker.request_run()
        self.site_worker.request_run()

    def run_query(self) -> None:
        """Recompile the condition list and refresh the buckets."""
        self.query = self.conditions.compile()
        log.info("Query recompiled: %s", self.query)
        self.bucket_worker.request_run()

    def select_marker(self, marker: MarkerHandle) -> None:
        self.reconciler.select(marker)
        self.selection_worker.request_run()

    def refresh_reference_data(self) -> None:
        self.reference_worker.request_run()

    # ── Bucket aggregation ───────────────────────────────────────────

    def _prepare_buckets(self) -> Tuple[Viewport, CompiledQuery, int]:
        return self._viewport_source(), self.query, self._cfg.map.max_samples_per_bucket

    def _aggregate(self, args: Tuple[Viewport, CompiledQuery, int]) -> List[GeoBucket]:
        viewport, query, max_samples = args
        return self._aggregator.perform(viewport, viewport.depth, query, max_samples)

    def _apply_buckets(self, buckets: List[GeoBucket]) -> None:
        try:
            self.reconciler.reconcile(buckets)
        except InvariantViolation as exc:
            self.reporter.notify(f"Discarding map update: {exc}")
            return
        # rows for the old selection must not land after it was cleared
        self.selection_worker.supersede()
        self.buckets_applied.emit(self.reconciler.markers)
        self.rows_ready.emit([])

    # ── Selection ────────────────────────────────────────────────────

    def _prepare_selection(self) -> Optional[GeoBucket]:
        selected = self.reconciler.selected
        return selected.bucket if selected is not None else None

    # ── Site overlays ────────────────────────────────────────────────

    def _sites_within(self, viewport: Viewport) -> Tuple[List[str], float]:
        return self._detector.site_codes_within(viewport), viewport.zoom

    def _apply_sites(self, result: Tuple[List[str], float]) -> None:
        codes, zoom = result
        self.layers.clear_layer(MapLayer.BORDER_POLYGON)
        self.layers.clear_layer(MapLayer.SITE_PINS)
        as_polygon = zoom > self._cfg.map.pin_to_polygon_zoom
        overlays = []
        for code in codes:
            site = self.sites.get(code)
            if site is None:
                continue
            overlay = SiteOverlay(site, as_polygon)
            self.layers.add(overlay, MapLayer.BORDER_POLYGON if as_polygon else MapLayer.SITE_PINS)
            overlays.append(overlay)
        self._site_overlays = overlays
        self.sites_updated.emit(list(overlays))

    # ── Reference data ───────────────────────────────────────────────

    def _pull_reference(self, _unused: None):
        return self._catalog.pull_sites(), self._catalog.pull_collections()

    def _apply_reference(self, result) -> None:
        sites, collections = result
        self.sites = {s.code: s for s in sites}
        self._collection_names = collection_names(collections)
        log.info("Reference data: %d sites, %d collections", len(sites), len(collections))
        self.site_worker.request_run()

    # ── Query polygon overlays ───────────────────────────────────────

    def _on_condition_changed(self, condition: FilterCondition, added: bool) -> None:
        if not isinstance(condition, PolygonCondition):
            return
        if added:
            overlay = _QueryOverlay(condition)
            self.layers.add(condition, MapLayer.QUERY_BOUNDARY)
            for i in range(len(condition.points)):
                corner = QueryCorner(condition, i)
                overlay.corners.append(corner)
                self.layers.add(corner, MapLayer.QUERY_CORNER)
            self._query_overlays[id(condition)] = overlay
        else:
            overlay = self._query_overlays.pop(id(condition), None)
            if overlay is None:
                return
            self.layers.remove(condition)
            for corner in overlay.corners:
                self.layers.remove(corner)

    def add_polygon_point(self, condition: PolygonCondition, lat: float, lon: float) -> None:
        """Append a corner to a query polygon and give it a drag handle."""
        condition.add_point(lat, lon)
        overlay = self._query_overlays.get(id(condition))
        if overlay is not None:
            corner = QueryCorner(condition, len(condition.points) - 1)
            overlay.corners.append(corner)
            self.layers.add(corner, MapLayer.QUERY_CORNER)

    def remove_polygon_point(self, condition: PolygonCondition, index: int) -> None:
        """Delete a corner; later corners shift down so the last handle goes."""
        condition.remove_point(index)
        overlay = self._query_overlays.get(id(condition))
        if overlay is not None and overlay.corners:
            self.layers.remove(overlay.corners.pop())
