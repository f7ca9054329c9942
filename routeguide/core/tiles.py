"""
Fixed grid over lat/lon degrees.

Tile ids are "{latIndex}_{lonIndex}" with index = floor(coord / tile_size),
so the same coordinate always lands in the same tile for a given size.
"""
from __future__ import annotations

import math
from typing import Dict, Iterable, List, Sequence

from routeguide.core.contracts import Tile

TILE_SIZE_DEG = 0.25

# Approximation: 1 deg lat ~ 111 km, 1 deg lon ~ 111 km * cos(lat)
KM_PER_DEG = 111.0
_MIN_COS = 1e-4


def lat_to_index(lat: float, tile_size: float = TILE_SIZE_DEG) -> int:
    return math.floor(lat / tile_size)


def lon_to_index(lon: float, tile_size: float = TILE_SIZE_DEG) -> int:
    return math.floor(lon / tile_size)


def get_tile_id(lat_index: int, lon_index: int) -> str:
    return f"{lat_index}_{lon_index}"


def tile_id_for_point(lat: float, lon: float, tile_size: float = TILE_SIZE_DEG) -> str:
    return get_tile_id(lat_to_index(lat, tile_size), _wrap_lon_index(lon_to_index(lon, tile_size), tile_size))


def tile_from_indices(lat_index: int, lon_index: int, tile_size: float = TILE_SIZE_DEG) -> Tile:
    return Tile(
        id=get_tile_id(lat_index, lon_index),
        min_lat=lat_index * tile_size,
        max_lat=(lat_index + 1) * tile_size,
        min_lon=lon_index * tile_size,
        max_lon=(lon_index + 1) * tile_size,
    )


def tile_for_point(lat: float, lon: float, tile_size: float = TILE_SIZE_DEG) -> Tile:
    # lon 180 shares a cell with lon -180
    return tile_from_indices(
        lat_to_index(lat, tile_size), _wrap_lon_index(lon_to_index(lon, tile_size), tile_size), tile_size
    )


# ──────────────────────────────────────────────────────────────
# Index ranges
# ──────────────────────────────────────────────────────────────

def _lat_index_bounds(tile_size: float) -> tuple[int, int]:
    return lat_to_index(-90.0, tile_size), math.ceil(90.0 / tile_size) - 1


def _lon_ring(tile_size: float) -> tuple[int, int]:
    """(first index of the ring at -180, number of cells around the globe)"""
    return lon_to_index(-180.0, tile_size), int(round(360.0 / tile_size))


def _wrap_lon_index(idx: int, tile_size: float) -> int:
    lo, n = _lon_ring(tile_size)
    return lo + (idx - lo) % n


def _lon_indices(min_lon: float, max_lon: float, tile_size: float) -> List[int]:
    lo, n = _lon_ring(tile_size)
    if max_lon - min_lon >= 360.0:
        return list(range(lo, lo + n))

    out: List[int] = []
    seen = set()
    for i in range(lon_to_index(min_lon, tile_size), lon_to_index(max_lon, tile_size) + 1):
        w = _wrap_lon_index(i, tile_size)
        if w not in seen:
            seen.add(w)
            out.append(w)
    return out


def _add_cells(
    tiles: Dict[str, Tile],
    lat_indices: Iterable[int],
    lon_indices: Sequence[int],
    tile_size: float,
) -> None:
    for i in lat_indices:
        for j in lon_indices:
            tid = get_tile_id(i, j)
            if tid not in tiles:
                tiles[tid] = tile_from_indices(i, j, tile_size)


# ──────────────────────────────────────────────────────────────
# Public
# ──────────────────────────────────────────────────────────────

def tiles_for_route(
    route: Sequence[Sequence[float]],
    radius_km: float,
    *,
    tile_size: float = TILE_SIZE_DEG,
) -> List[Tile]:
    """
    Every tile that a point within ``radius_km`` of any route vertex could
    fall in, de-duplicated by id (first-seen order).

    The longitude half-width uses the cosine of the box's poleward edge, so
    the cover never shrinks below the true circle; near the poles it
    over-covers, and a box touching a pole takes the whole latitude ring.
    """
    tiles: Dict[str, Tile] = {}
    radius_km = max(0.0, float(radius_km))
    lat_deg = radius_km / KM_PER_DEG
    lat_lo, lat_hi = _lat_index_bounds(tile_size)

    for pt in route:
        lat, lon = float(pt[0]), float(pt[1])

        min_lat = lat - lat_deg
        max_lat = lat + lat_deg

        if min_lat <= -90.0 or max_lat >= 90.0:
            lon_span = 360.0
        else:
            edge_lat = max(abs(min_lat), abs(max_lat))
            lon_scale = max(abs(math.cos(math.radians(edge_lat))), _MIN_COS)
            lon_span = 2.0 * radius_km / (KM_PER_DEG * lon_scale)

        lat_indices = range(
            max(lat_lo, lat_to_index(min_lat, tile_size)),
            min(lat_hi, lat_to_index(max_lat, tile_size)) + 1,
        )
        lon_indices = _lon_indices(lon - lon_span / 2.0, lon + lon_span / 2.0, tile_size)
        _add_cells(tiles, lat_indices, lon_indices, tile_size)

    return list(tiles.values())


def tiles_for_bbox(
    bbox: Sequence[float],
    *,
    tile_size: float = TILE_SIZE_DEG,
    max_tiles: int | None = None,
) -> List[Tile]:
    """All grid tiles intersecting [minLat, maxLat, minLon, maxLon]."""
    min_lat, max_lat, min_lon, max_lon = (float(v) for v in bbox)
    lat_lo, lat_hi = _lat_index_bounds(tile_size)

    tiles: Dict[str, Tile] = {}
    lat_indices = range(
        max(lat_lo, lat_to_index(min_lat, tile_size)),
        min(lat_hi, lat_to_index(max_lat, tile_size)) + 1,
    )
    _add_cells(tiles, lat_indices, _lon_indices(min_lon, max_lon, tile_size), tile_size)

    out = list(tiles.values())
    if max_tiles is not None:
        out = out[: max(0, int(max_tiles))]
    return out
