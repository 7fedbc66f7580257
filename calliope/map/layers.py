"""
Z-order compositor for map overlays.

Every drawable on the map belongs to exactly one layer.  Drawing order is
layer rank first, then insertion order within the layer, so a bucket
circle added after a query-corner handle still draws underneath it.

Usage
-----
    layers = LayeredDrawList()
    layers.add(tile_source, MapLayer.TILE_PROVIDER)
    layers.add(circle, MapLayer.CIRCLES)
    layers.draw_order()   # → [tile_source, circle]
"""
from __future__ import annotations

import enum
from typing import Any, Callable, Dict, List, Optional


class MapLayer(enum.IntEnum):
    TILE_PROVIDER = 0
    BORDER_POLYGON = 1
    CIRCLES = 2
    QUERY_BOUNDARY = 3
    QUERY_CORNER = 4
    SITE_PINS = 5


class LayeredDrawList:
    """Draw list partitioned by :class:`MapLayer`."""

    def __init__(self) -> None:
        self._layers: Dict[MapLayer, List[Any]] = {layer: [] for layer in MapLayer}
        self._rank: Dict[int, MapLayer] = {}   # id(item) → layer
        self._listeners: List[Callable[[], None]] = []

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    def add(self, item: Any, layer: MapLayer) -> None:
        """Add *item* at the top of *layer*; an item already present is moved."""
        layer = MapLayer(layer)
        if id(item) in self._rank:
            self._detach(item)
        self._layers[layer].append(item)
        self._rank[id(item)] = layer
        self._changed()

    def _detach(self, item: Any) -> None:
        layer = self._rank.pop(id(item))
        members = self._layers[layer]
        for i, member in enumerate(members):
            if member is item:
                del members[i]
                break

    def remove(self, item: Any) -> bool:
        """Remove *item* from both the draw list and the rank lookup."""
        if id(item) not in self._rank:
            return False
        self._detach(item)
        self._changed()
        return True

    def clear_layer(self, layer: MapLayer) -> None:
        members = self._layers[MapLayer(layer)]
        if not members:
            return
        for item in members:
            self._rank.pop(id(item), None)
        members.clear()
        self._changed()

    def layer_of(self, item: Any) -> Optional[MapLayer]:
        return self._rank.get(id(item))

    def items(self, layer: MapLayer) -> List[Any]:
        return list(self._layers[MapLayer(layer)])

    def draw_order(self) -> List[Any]:
        order: List[Any] = []
        for layer in MapLayer:
            order.extend(self._layers[layer])
        return order

    def __len__(self) -> int:
        return len(self._rank)

    def __contains__(self, item: Any) -> bool:
        return id(item) in self._rank
