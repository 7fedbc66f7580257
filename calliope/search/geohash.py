"""
Geohash cells.

A geohash interleaves longitude and latitude bisection bits and writes
them 5 at a time in base-32.  Precision *n* (1–12) is the number of
characters: precision 1 cells are ~5000 km across, precision 9 cells a few
metres.  Every point maps to exactly one cell at each precision.

Usage
-----
    from calliope.search.geohash import encode
    h = encode(lat=40.0, lon=-105.3, precision=5)
"""
from __future__ import annotations

_BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"

MIN_PRECISION = 1
MAX_PRECISION = 12


def encode(lat: float, lon: float, precision: int) -> str:
    """Return the geohash cell containing (*lat*, *lon*)."""
    if not MIN_PRECISION <= precision <= MAX_PRECISION:
        raise ValueError(f"Geohash precision must be 1-12, got {precision}")

    lat_lo, lat_hi = -90.0, 90.0
    lon_lo, lon_hi = -180.0, 180.0
    chars = []
    bits = 0
    value = 0
    even = True  # even bits split longitude

    while len(chars) < precision:
        if even:
            mid = (lon_lo + lon_hi) / 2.0
            if lon >= mid:
                value = (value << 1) | 1
                lon_lo = mid
            else:
                value <<= 1
                lon_hi = mid
        else:
            mid = (lat_lo + lat_hi) / 2.0
            if lat >= mid:
                value = (value << 1) | 1
                lat_lo = mid
            else:
                value <<= 1
                lat_hi = mid
        even = not even
        bits += 1
        if bits == 5:
            chars.append(_BASE32[value])
            bits = 0
            value = 0

    return "".join(chars)

