"""
Error taxonomy and user-facing error reporting.

Every failure in the map engine is recoverable at the operation boundary.
Components raise the exceptions below; whoever owns the operation decides
whether to abort (transport), substitute an empty result (bad geometry) or
discard the run (invariant violation), and tells the user through an
:class:`ErrorReporter`.

Usage
-----
    reporter = ErrorReporter()
    reporter.add_listener(status_bar.showMessage)
    try:
        buckets = aggregator.perform(...)
    except SearchUnavailableError as exc:
        reporter.notify(f"Search backend unreachable: {exc}")
"""
from __future__ import annotations

import logging
from typing import Callable, List

log = logging.getLogger(__name__)


class CalliopeError(Exception):
    """Base class for all engine errors."""


class SearchUnavailableError(CalliopeError):
    """The search backend could not be reached or kept failing (5xx, timeout)."""


class SearchRequestError(CalliopeError):
    """The search backend rejected a request (4xx)."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


class InvalidGeometryError(CalliopeError):
    """A viewport or polygon that cannot be sent to the backend."""


class InvariantViolation(CalliopeError):
    """Internal consistency check failed; the run's results are discarded."""


class CursorError(CalliopeError):
    """A cursor was used after it was closed or after its TTL expired."""


class ErrorReporter:
    """Logs errors and forwards them to any registered listeners.

    Listeners are typically Qt slots (status bar, message box).  A listener
    that raises is logged and skipped so one broken display cannot hide the
    error from the others.
    """

    def __init__(self) -> None:
        self._listeners: List[Callable[[str], None]] = []
        self.history: List[str] = []

    def add_listener(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def notify(self, message: str) -> None:
        log.error(message)
        self.history.append(message)
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as exc:
                log.warning("Error listener %r failed: %s", listener, exc)
