"""
Spherical-earth distance helpers (km).

Route coordinates are (lat, lon) pairs throughout.
"""
from __future__ import annotations

import math
from typing import Sequence, Tuple

EARTH_RADIUS_KM = 6371.0

LatLon = Tuple[float, float]


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    return 2.0 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def point_to_segment_km(
    lat: float, lon: float,
    lat1: float, lon1: float,
    lat2: float, lon2: float,
) -> float:
    """
    Project the point onto the segment in degree space, clamp to the
    endpoints, then measure the great-circle distance to the projection.
    """
    c = lat2 - lat1
    d = lon2 - lon1
    len_sq = c * c + d * d

    t = -1.0
    if len_sq != 0:
        t = ((lat - lat1) * c + (lon - lon1) * d) / len_sq

    if t < 0:
        plat, plon = lat1, lon1
    elif t > 1:
        plat, plon = lat2, lon2
    else:
        plat, plon = lat1 + t * c, lon1 + t * d

    return haversine_km(lat, lon, plat, plon)


def min_distance_to_route_km(lat: float, lon: float, route: Sequence[Sequence[float]]) -> float:
    if not route:
        return float("inf")
    if len(route) == 1:
        return haversine_km(lat, lon, float(route[0][0]), float(route[0][1]))

    best = float("inf")
    for i in range(len(route) - 1):
        a = route[i]
        b = route[i + 1]
        d = point_to_segment_km(
            lat, lon,
            float(a[0]), float(a[1]),
            float(b[0]), float(b[1]),
        )
        if d < best:
            best = d
    return best


def route_span_km(route: Sequence[Sequence[float]]) -> float:
    """Straight-line distance first -> last vertex."""
    if len(route) < 2:
        return 0.0
    first, last = route[0], route[-1]
    return haversine_km(float(first[0]), float(first[1]), float(last[0]), float(last[1]))
