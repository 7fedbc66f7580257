"""
Single-flight background worker with supersede semantics.

Every map recomputation (bucket aggregation, site overlay, selection rows)
is owned by one :class:`SingleFlightWorker`:

  request_run()  (interactive thread)
    → sequence += 1
    → busy?  mark dirty and return
    → prepare()          snapshot viewport / query on the interactive thread
    → spawn(work)        daemon thread does the backend I/O
  work finished  (background thread)
    → dispatch(finish)   hop back to the interactive thread (Qt queued signal)
  finish()  (interactive thread)
    → result applied only if its sequence is still the latest
    → dirty?  clear it and start exactly one more run

``supersede()`` invalidates the in-flight run without starting another,
for results that depend on state the interactive thread has since reset.

At most one run is ever in flight and a stale result can never overwrite a
newer one.  Runs are not cancelable; superseding is the cancellation.

Usage
-----
    worker = SingleFlightWorker(
        "buckets",
        prepare=lambda: (viewport(), controller.query),
        work=lambda args: aggregator.perform(*args),
        on_result=apply_buckets,
        on_error=lambda exc: reporter.notify(str(exc)),
    )
    map_widget.panFinished.connect(worker.request_run)
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from PyQt5 import QtCore

log = logging.getLogger(__name__)

Spawner = Callable[[Callable[[], None], str], None]
Dispatcher = Callable[[Callable[[], None]], None]


def spawn_daemon(target: Callable[[], None], name: str) -> None:
    threading.Thread(target=target, daemon=True, name=name).start()


class MainThreadInvoker(QtCore.QObject):
    """Runs callables on the thread this object was created on.

    Create it on the interactive (GUI) thread; calling it from any thread
    queues the callable through Qt's event loop.
    """

    _invoke = QtCore.pyqtSignal(object)

    def __init__(self, parent: Optional[QtCore.QObject] = None):
        super().__init__(parent)
        self._invoke.connect(self._run, QtCore.Qt.QueuedConnection)

    def __call__(self, fn: Callable[[], None]) -> None:
        self._invoke.emit(fn)

    @QtCore.pyqtSlot(object)
    def _run(self, fn: Callable[[], None]) -> None:
        fn()


class SingleFlightWorker:
    """At most one run in flight; triggers while busy collapse into one rerun."""

    def __init__(
        self,
        name: str,
        prepare: Callable[[], Any],
        work: Callable[[Any], Any],
        on_result: Callable[[Any], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        spawn: Optional[Spawner] = None,
        dispatch: Optional[Dispatcher] = None,
    ):
        self.name = name
        self._prepare = prepare
        self._work = work
        self._on_result = on_result
        self._on_error = on_error
        self._spawn = spawn or spawn_daemon
        self._dispatch = dispatch or MainThreadInvoker()

        # Interactive-thread state only
        self._seq = 0
        self._running = False
        self._dirty = False
        self.runs_started = 0
        self.results_applied = 0
        self.results_dropped = 0

    @property
    def busy(self) -> bool:
        return self._running

    @property
    def sequence(self) -> int:
        return self._seq

    def request_run(self) -> None:
        """Ask for a fresh run.  Call on the interactive thread."""
        self._seq += 1
        if self._running:
            self._dirty = True
            return
        self._start()

    def supersede(self) -> None:
        """Drop the in-flight result and any pending rerun without starting a new one."""
        self._seq += 1
        self._dirty = False

    def _start(self) -> None:
        seq = self._seq
        try:
            args = self._prepare()
        except Exception as exc:
            self._report(exc)
            return
        self._running = True
        self.runs_started += 1
        self._spawn(lambda: self._execute(seq, args), f"{self.name}-{seq}")

    def _execute(self, seq: int, args: Any) -> None:
        """Background thread: do the work, then hand back to the interactive thread."""
        try:
            result = self._work(args)
        except Exception as exc:
            log.debug("%s run %d failed: %s", self.name, seq, exc)
            self._dispatch(lambda: self._finish(seq, None, exc))
            return
        self._dispatch(lambda: self._finish(seq, result, None))

    def _finish(self, seq: int, result: Any, error: Optional[Exception]) -> None:
        self._running = False
        if error is not None:
            self._report(error)
        elif seq == self._seq:
            self.results_applied += 1
            try:
                self._on_result(result)
            except Exception as exc:
                self._report(exc)
        else:
            self.results_dropped += 1
            log.debug("%s run %d superseded by %d", self.name, seq, self._seq)

        if self._dirty:
            self._dirty = False
            self._start()

    def _report(self, exc: Exception) -> None:
        if self._on_error is not None:
            self._on_error(exc)
        else:
            log.error("%s worker failed: %s", self.name, exc)
