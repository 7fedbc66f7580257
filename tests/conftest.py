from __future__ import annotations

from typing import Callable, List

import pytest
from PyQt5 import QtCore

from calliope.config import CalliopeConfig
from calliope.errors import ErrorReporter
from calliope.search.memory import MemorySearchBackend

# Three images a few metres apart near Boulder, one far away in the Sahel
CLUSTER = [(40.0001, -105.0001), (40.0002, -105.0002), (40.0003, -105.0003)]
FAR_AWAY = (10.0, 20.0)


def image(path: str, collection: str, lat: float, lon: float,
          altitude="1650.5", camera="FC6310", taken="2019-06-01 12:00:00") -> dict:
    return {
        "storagePath": path,
        "collectionID": collection,
        "imageMetadata": {
            "position": {"lat": lat, "lon": lon},
            "altitude": altitude,
            "cameraModel": camera,
            "dateTaken": taken,
            "droneMaker": "DJI",
            "neonSiteCode": "NEON_D10_CPER",
            "yearTaken": 2019,
            "monthTaken": 6,
            "hourTaken": 12,
            "speed": {"x": 0.0, "y": 0.0, "z": 0.0},
        },
    }


def square(lon0: float, lat0: float, lon1: float, lat1: float) -> list:
    return [[lon0, lat0], [lon1, lat0], [lon1, lat1], [lon0, lat1], [lon0, lat0]]


def load_sample(backend: MemorySearchBackend) -> None:
    for i, (lat, lon) in enumerate(CLUSTER, start=1):
        backend.index("metadata", f"img-{i}",
                      image(f"/iplant/home/drone/flight1/DJI_000{i}.JPG", "c-1", lat, lon))
    backend.index("metadata", "img-4",
                  image("/iplant/home/drone/flight2/DJI_0100.JPG", "c-2", *FAR_AWAY,
                        altitude="unknown", taken="2020-01-15 08:30:00"))

    backend.index("collections", "c-1", {
        "id": "c-1", "name": "Boulder flights", "organization": "University of Arizona",
        "contactInfo": "drone@example.org", "description": "Summer survey",
    })
    backend.index("collections", "c-2", {"id": "c-2", "name": "Sahel transect"})

    backend.index("neon_sites", "s-1", {
        "site": {"siteCode": "NEON_D10_CPER", "siteName": "Central Plains",
                 "siteLatitude": 40.0, "siteLongitude": -105.0},
        "boundary": {"type": "polygon", "coordinates": [square(-106.0, 39.0, -104.0, 41.0)]},
    })
    # Ring-shaped site whose hole contains FAR_AWAY
    backend.index("neon_sites", "s-2", {
        "site": {"siteCode": "LTAR_SAHEL", "siteName": "Sahel ring",
                 "siteLatitude": 10.0, "siteLongitude": 20.0},
        "boundary": {"type": "polygon", "coordinates": [
            square(19.0, 9.0, 21.0, 11.0),
            square(19.9, 9.9, 20.1, 10.1),
        ]},
    })


@pytest.fixture(scope="session")
def qapp():
    app = QtCore.QCoreApplication.instance()
    if app is None:
        app = QtCore.QCoreApplication([])
    return app


@pytest.fixture
def config() -> CalliopeConfig:
    return CalliopeConfig()


@pytest.fixture
def reporter() -> ErrorReporter:
    return ErrorReporter()


@pytest.fixture
def backend() -> MemorySearchBackend:
    b = MemorySearchBackend()
    load_sample(b)
    return b


class ManualSpawner:
    """Collects spawned jobs so a test decides when each background run ends."""

    def __init__(self) -> None:
        self.jobs: List[Callable[[], None]] = []
        self.names: List[str] = []
        self._pending: List[str] = []

    def __call__(self, target: Callable[[], None], name: str) -> None:
        self.jobs.append(target)
        self.names.append(name)
        self._pending.append(name)

    def run_next(self) -> None:
        self._pending.pop(0)
        self.jobs.pop(0)()

    def run_named(self, prefix: str) -> None:
        """Run the oldest pending job whose thread name starts with *prefix*."""
        i = next(i for i, name in enumerate(self._pending) if name.startswith(prefix))
        self._pending.pop(i)
        self.jobs.pop(i)()

    def run_all(self) -> None:
        while self.jobs:
            self.run_next()


def run_inline(target: Callable[[], None], name: str) -> None:
    target()


def dispatch_inline(fn: Callable[[], None]) -> None:
    fn()


class GrowingList(list):
    """Reports one more item every time it is sized after the first."""

    def __init__(self, items):
        super().__init__(items)
        self._calls = 0

    def __len__(self):
        self._calls += 1
        return super().__len__() + (1 if self._calls > 1 else 0)
