"""
Calliope — geo-tagged image map engine.

Entry point: python -m calliope.main

Provides:
- Search backend contract with REST and in-memory implementations (search/)
- Filter conditions and the boolean query compiler (query/)
- Viewport clamping, geohash aggregation, site detection (geo/)
- Collection / site synchronisation and bulk deletion (catalog)
- Marker reconciliation, z-ordered overlays, selection enrichment and
  single-flight background workers (map/)
"""

__version__ = "0.4.0"
