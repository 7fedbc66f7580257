"""
Query compiler — turns the condition list into one boolean query.

The compiled query is the logical AND of every enabled, complete
condition.  Disabled or incomplete conditions are dropped entirely, so a
query compiled with a condition switched off is structurally identical to
one compiled without it.  An empty list compiles to ``match_all``.

A :class:`CompiledQuery` is immutable and built once per "query" click;
consumers detect a filter change by identity (``new is not old``).

Usage
-----
    conditions = QueryConditionList()
    conditions.append(TermsCondition("collectionID", ["c-1"]))
    query = conditions.compile()
    query.body   # {"bool": {"filter": [{"terms": {"collectionID": ["c-1"]}}]}}
"""
from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List

from .conditions import FilterCondition

log = logging.getLogger(__name__)

MATCH_ALL: Dict[str, Any] = {"match_all": {}}


class CompiledQuery:
    """Immutable boolean query body."""

    __slots__ = ("_body",)

    def __init__(self, body: Dict[str, Any]):
        # fragments are shared with their conditions until this copy
        self._body = copy.deepcopy(body)

    @property
    def body(self) -> Dict[str, Any]:
        """Query body, safe to embed in a request (a fresh copy each time)."""
        return copy.deepcopy(self._body)

    @property
    def is_match_all(self) -> bool:
        return self._body == MATCH_ALL

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CompiledQuery):
            return NotImplemented
        return self._body == other._body

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"CompiledQuery({self._body!r})"


def compile_query(conditions: Iterable[FilterCondition]) -> CompiledQuery:
    """AND together the fragments of all enabled, complete conditions."""
    fragments = []
    skipped = 0
    for condition in conditions:
        if not condition.enabled:
            continue
        fragment = condition.fragment()
        if fragment is None:
            skipped += 1
            continue
        fragments.append(fragment)

    if skipped:
        log.debug("Compiled query skipped %d incomplete condition(s)", skipped)
    if not fragments:
        return CompiledQuery(MATCH_ALL)
    return CompiledQuery({"bool": {"filter": fragments}})


class QueryConditionList:
    """Ordered, user-editable list of conditions; the source of truth for
    what the map is filtered by.

    Listeners are called with ``(condition, added)`` after every insert or
    removal so overlays (e.g. drawn polygons) can follow the list.
    """

    def __init__(self, conditions: Iterable[FilterCondition] = ()):
        self._items: List[FilterCondition] = list(conditions)
        self._listeners: List[Callable[[FilterCondition, bool], None]] = []

    def add_listener(self, listener: Callable[[FilterCondition, bool], None]) -> None:
        self._listeners.append(listener)

    def _changed(self, condition: FilterCondition, added: bool) -> None:
        for listener in list(self._listeners):
            listener(condition, added)

    def append(self, condition: FilterCondition) -> None:
        self._items.append(condition)
        self._changed(condition, True)

    def insert(self, index: int, condition: FilterCondition) -> None:
        self._items.insert(index, condition)
        self._changed(condition, True)

    def remove(self, condition: FilterCondition) -> None:
        self._items.remove(condition)
        self._changed(condition, False)

    def clear(self) -> None:
        while self._items:
            self.remove(self._items[-1])

    def compile(self) -> CompiledQuery:
        return compile_query(self._items)

    def __iter__(self) -> Iterator[FilterCondition]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> FilterCondition:
        return self._items[index]
