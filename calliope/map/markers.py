"""
Bucket reconciler — keeps one marker per bucket with minimal churn.

Aggregation runs come back as fresh bucket lists.  Rather than tearing
every marker down and rebuilding, the reconciler grows or shrinks the
marker list at its tail and then remaps bucket *i* onto marker *i*,
updating position and bucket in place.  A pan that keeps the same number
of cells allocates nothing.

Usage
-----
    reconciler = BucketReconciler(on_added=layers_add, on_removed=layers_remove)
    stats = reconciler.reconcile(buckets)
    print(stats.added, stats.removed, len(reconciler.markers))
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from ..errors import InvariantViolation
from ..geo.aggregation import GeoBucket

log = logging.getLogger(__name__)


@dataclass(eq=False)
class MarkerHandle:
    """A circle on the map bound to one bucket position."""

    bucket: GeoBucket
    position: Tuple[float, float]
    selected: bool = False


@dataclass(frozen=True)
class ReconcileStats:
    added: int
    removed: int


def _new_marker(bucket: GeoBucket) -> MarkerHandle:
    return MarkerHandle(bucket=bucket, position=bucket.position)


class BucketReconciler:
    """Owns the live marker list for the bucket layer."""

    def __init__(
        self,
        factory: Callable[[GeoBucket], MarkerHandle] = _new_marker,
        on_added: Optional[Callable[[MarkerHandle], None]] = None,
        on_removed: Optional[Callable[[MarkerHandle], None]] = None,
    ):
        self._factory = factory
        self._on_added = on_added
        self._on_removed = on_removed
        self._markers: List[MarkerHandle] = []
        self._selected: Optional[MarkerHandle] = None

    @property
    def markers(self) -> List[MarkerHandle]:
        return list(self._markers)

    @property
    def selected(self) -> Optional[MarkerHandle]:
        return self._selected

    def reconcile(self, buckets: Sequence[GeoBucket]) -> ReconcileStats:
        """Bring the marker list in line with *buckets* and clear the selection.

        Raises
        ------
        InvariantViolation
            If the planned marker count does not match the bucket count.
            The marker list is left exactly as it was.
        """
        # plan the resize first; nothing is touched until the counts agree
        target = len(buckets)
        kept = self._markers[:target]
        dropped = self._markers[target:]
        fresh = [self._factory(b) for b in buckets[len(kept):target]]
        planned = kept + fresh
        if len(planned) != len(buckets):
            raise InvariantViolation(
                f"{len(planned)} markers for {len(buckets)} buckets"
            )

        self._markers = planned
        for marker in fresh:
            if self._on_added is not None:
                self._on_added(marker)
        for marker in reversed(dropped):
            if marker is self._selected:
                marker.selected = False
                self._selected = None
            if self._on_removed is not None:
                self._on_removed(marker)

        for marker, bucket in zip(planned, buckets):
            marker.bucket = bucket
            marker.position = bucket.position
        added, removed = len(fresh), len(dropped)

        self.clear_selection()
        log.debug("Reconciled %d buckets (+%d / -%d)", len(buckets), added, removed)
        return ReconcileStats(added=added, removed=removed)

    def select(self, marker: MarkerHandle) -> GeoBucket:
        """Make *marker* the only selected marker and return its bucket."""
        if not any(m is marker for m in self._markers):
            raise ValueError("Marker is not managed by this reconciler")
        if self._selected is not None and self._selected is not marker:
            self._selected.selected = False
        marker.selected = True
        self._selected = marker
        return marker.bucket

    def clear_selection(self) -> None:
        if self._selected is not None:
            self._selected.selected = False
            self._selected = None
