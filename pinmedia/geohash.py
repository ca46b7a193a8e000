"""Geohash encoding for coarse spatial bucketing of records."""

from __future__ import annotations

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
DEFAULT_PRECISION = 7


def encode(latitude: float, longitude: float, precision: int = DEFAULT_PRECISION) -> str:
    if precision <= 0:
        raise ValueError("precision must be positive")
    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    latitude = min(max(latitude, -90.0), 90.0)
    longitude = min(max(longitude, -180.0), 180.0)

    chars: list[str] = []
    bits = 0
    bit_count = 0
    even = True
    while len(chars) < precision:
        # Bits alternate between longitude and latitude, longitude first.
        if even:
            value, bounds = longitude, lon_range
        else:
            value, bounds = latitude, lat_range
        mid = (bounds[0] + bounds[1]) / 2
        if value >= mid:
            bits = (bits << 1) | 1
            bounds[0] = mid
        else:
            bits <<= 1
            bounds[1] = mid
        even = not even
        bit_count += 1
        if bit_count == 5:
            chars.append(BASE32[bits])
            bits = 0
            bit_count = 0
    return "".join(chars)
