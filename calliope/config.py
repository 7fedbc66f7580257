"""
Configuration for the search connection and the map engine.

Defaults live on the dataclasses; a JSON file can override any of them.
The file has one object per section:

    {
        "search": {"host": "es.example.org", "port": 9200, "scheme": "https"},
        "map":    {"max_samples_per_bucket": 50}
    }

Usage
-----
    cfg = load_config()                       # CALLIOPE_CONFIG or defaults
    cfg = load_config(Path("calliope.json"))
    print(cfg.search.base_url, cfg.map.max_samples_per_bucket)
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CALLIOPE_CONFIG"


@dataclass
class SearchConfig:
    """Where the search backend lives and how patiently we talk to it."""
    host: str = "localhost"
    port: int = 9200
    scheme: str = "http"
    username: Optional[str] = None
    password: Optional[str] = None
    timeout_s: float = 30.0
    retries: int = 2
    backoff_s: float = 1.0

    # Index names
    metadata_index: str = "metadata"
    collections_index: str = "collections"
    sites_index: str = "neon_sites"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


@dataclass
class MapConfig:
    """Tunables for aggregation, paging and overlays."""
    max_samples_per_bucket: int = 20
    scroll_ttl: str = "1m"
    reference_page_size: int = 10       # sites / collections
    delete_page_size: int = 500         # documents removed per bulk request
    path_page_size: int = 1000
    pin_to_polygon_zoom: float = 10.0   # sites draw as boundaries above this zoom
    index_date_format: str = "%Y-%m-%d %H:%M:%S"
    tile_url: str = (
        "https://server.arcgisonline.com/ArcGIS/rest/services/"
        "World_Imagery/MapServer/tile/{z}/{y}/{x}"
    )


@dataclass
class CalliopeConfig:
    search: SearchConfig = field(default_factory=SearchConfig)
    map: MapConfig = field(default_factory=MapConfig)


def _apply(section: object, values: dict, name: str) -> None:
    known = {f.name for f in fields(section)}
    for key, value in values.items():
        if key not in known:
            raise KeyError(f"Unknown '{name}' config key: {key}")
        setattr(section, key, value)


def load_config(path: Optional[Path] = None) -> CalliopeConfig:
    """Load configuration from *path*, ``$CALLIOPE_CONFIG`` or defaults."""
    cfg = CalliopeConfig()
    if path is None and os.environ.get(CONFIG_ENV_VAR):
        path = Path(os.environ[CONFIG_ENV_VAR])
    if path is None:
        return cfg

    with Path(path).open("r", encoding="utf-8") as f:
        raw = json.load(f)

    for section_name, values in raw.items():
        if section_name not in ("search", "map"):
            raise KeyError(f"Unknown config section: {section_name}")
        _apply(getattr(cfg, section_name), values, section_name)

    log.info("Loaded config from %s (backend %s)", path, cfg.search.base_url)
    return cfg
