"""Viewport handling, geohash aggregation and site detection."""
