"""
Result shaping for POI lists. Pure functions, no I/O.

Order of application in the query path:
  dedupe -> distance filter -> importance sort -> category interleave
  -> global cap -> (curation) -> stratified sample or plain slice
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Tuple

from routeguide.core.categories import IMPORTANT_TYPES
from routeguide.core.contracts import Poi
from routeguide.core.geo import haversine_km, min_distance_to_route_km

MIN_ANCHORS = 10
MAX_ANCHORS = 30


def dedupe_pois(pois: Iterable[Poi]) -> List[Poi]:
    """First occurrence of each "type/id" wins; order preserved."""
    seen = set()
    out: List[Poi] = []
    for p in pois:
        k = p.key
        if k in seen:
            continue
        seen.add(k)
        out.append(p)
    return out


def annotate_distances(pois: Iterable[Poi], route: Sequence[Sequence[float]]) -> List[Poi]:
    return [
        p.model_copy(update={"distance": min_distance_to_route_km(p.lat, p.lon, route)})
        for p in pois
    ]


def filter_by_distance(
    pois: Iterable[Poi],
    route: Sequence[Sequence[float]],
    max_distance_km: float,
) -> List[Poi]:
    """Keep POIs within max_distance_km of the route polyline, with `distance` set."""
    return [p for p in annotate_distances(pois, route) if p.distance is not None and p.distance <= max_distance_km]


def importance_key(poi: Poi, important: frozenset = IMPORTANT_TYPES) -> Tuple[int, float]:
    return (0 if poi.tourism in important else 1, poi.distance if poi.distance is not None else 0.0)


def sort_by_importance(pois: Iterable[Poi], important: frozenset = IMPORTANT_TYPES) -> List[Poi]:
    # sorted() is stable: equal keys keep source order
    return sorted(pois, key=lambda p: importance_key(p, important))


def _round_robin(groups: Sequence[List[Poi]], limit: int | None = None) -> List[Poi]:
    out: List[Poi] = []
    layer = 0
    longest = max((len(g) for g in groups), default=0)
    while layer < longest:
        for g in groups:
            if layer < len(g):
                out.append(g[layer])
                if limit is not None and len(out) >= limit:
                    return out
        layer += 1
    return out


def interleave_categories(pois: Iterable[Poi]) -> List[Poi]:
    """
    Group by category (first-appearance order), sort each group by importance,
    then emit one POI per category per layer.
    """
    groups: Dict[str, List[Poi]] = {}
    for p in pois:
        groups.setdefault(p.category, []).append(p)
    return _round_robin([sort_by_importance(g) for g in groups.values()])


def _anchors(route: Sequence[Sequence[float]]) -> List[Sequence[float]]:
    target = min(MAX_ANCHORS, max(MIN_ANCHORS, len(route) // 8))
    step = max(1, len(route) // target)
    anchors = list(route[::step])
    if anchors[-1] is not route[-1]:
        anchors.append(route[-1])
    return anchors


def stratify_along_route(
    pois: Sequence[Poi],
    route: Sequence[Sequence[float]],
    limit: int,
) -> List[Poi]:
    """
    Spread `limit` POIs along the route: each POI joins its nearest anchor,
    then anchors are drained round-robin in route order.
    Input order within an anchor is kept.
    """
    if limit <= 0:
        return []
    if not route or len(pois) <= limit:
        return list(pois[:limit])

    anchors = _anchors(route)
    buckets: List[List[Poi]] = [[] for _ in anchors]
    for p in pois:
        best_i = 0
        best_d = float("inf")
        for i, a in enumerate(anchors):
            d = haversine_km(p.lat, p.lon, float(a[0]), float(a[1]))
            if d < best_d:
                best_d = d
                best_i = i
        buckets[best_i].append(p)

    return _round_robin(buckets, limit)


def cap_pois(pois: Sequence[Poi], max_pois: int) -> Tuple[List[Poi], bool]:
    if len(pois) > max_pois:
        return list(pois[:max_pois]), True
    return list(pois), False
