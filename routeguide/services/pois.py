"""
POI query orchestration.

query():
  validate -> resolve defaults -> tile path or direct path
  -> global cap -> optional curation -> stratified sample / slice
  -> response + metadata

The tile path covers the route corridor with grid tiles, reads what the
cache already has in one bulk lookup, then loads the missing tiles in small
concurrent batches. A failed tile contributes nothing; the query only fails
when a strict majority of tiles failed.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from routeguide.core.categories import ALL_CATEGORIES, DEFAULT_CATEGORIES
from routeguide.core.contracts import (
    FiltersApplied,
    Poi,
    PoisMetadata,
    PoisRequest,
    PoisResponse,
    PreloadResponse,
    Tile,
    TileStats,
)
from routeguide.core.errors import InvalidRequestError, SourceError, TileCoverageError
from routeguide.core.geo import route_span_km
from routeguide.core.keying import build_filters_hash
from routeguide.core.poi_db import PoiDB
from routeguide.core.settings import settings
from routeguide.core.tiles import tiles_for_bbox, tiles_for_route
from routeguide.services.curation import CurationService
from routeguide.services.shaping import (
    cap_pois,
    dedupe_pois,
    filter_by_distance,
    interleave_categories,
    sort_by_importance,
    stratify_along_route,
)
from routeguide.services.tile_cache import PoiSource, TileCacheService, TileLoadResult

logger = logging.getLogger(__name__)

MIN_AUTO_DEVIATION_KM = 5.0
MAX_AUTO_DEVIATION_KM = 50.0


# ──────────────────────────────────────────────────────────────
# Validation
# ──────────────────────────────────────────────────────────────

def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def validate_bbox(bbox: Any) -> List[float]:
    if bbox is None:
        raise InvalidRequestError("Missing bbox parameter")
    if not isinstance(bbox, (list, tuple)) or len(bbox) != 4:
        raise InvalidRequestError("bbox must be [minLat, maxLat, minLon, maxLon]")
    if not all(_is_number(v) for v in bbox):
        raise InvalidRequestError("bbox values must be finite numbers")
    return [float(v) for v in bbox]


def validate_route(route: Any) -> Optional[List[List[float]]]:
    if route is None:
        return None
    if not isinstance(route, (list, tuple)):
        raise InvalidRequestError("route must be a list of [lat, lon] pairs")
    out: List[List[float]] = []
    for i, pt in enumerate(route):
        if not isinstance(pt, (list, tuple)) or len(pt) < 2 or not (_is_number(pt[0]) and _is_number(pt[1])):
            raise InvalidRequestError(f"route[{i}] is not a [lat, lon] pair")
        lat, lon = float(pt[0]), float(pt[1])
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            raise InvalidRequestError(f"route[{i}] is out of range")
        out.append([lat, lon])
    return out


def resolve_max_deviation(route: Optional[Sequence[Sequence[float]]], custom_km: Optional[float]) -> Optional[float]:
    """Custom value when given, else route span / 20 clamped to [5, 50] km."""
    if not route:
        return None
    if custom_km is not None:
        return float(custom_km)
    if len(route) < 2:
        return None
    return max(MIN_AUTO_DEVIATION_KM, min(route_span_km(route) / 20.0, MAX_AUTO_DEVIATION_KM))


# ──────────────────────────────────────────────────────────────
# Tile fan-out
# ──────────────────────────────────────────────────────────────

@dataclass
class TileFetchOutcome:
    tile_id: str
    ok: bool
    pois: List[Poi] = field(default_factory=list)
    source: str = ""
    error: Optional[str] = None


@dataclass
class _TilePathResult:
    pois: List[Poi]
    stats: TileStats


class PoiQueryService:
    def __init__(
        self,
        db: PoiDB,
        source: PoiSource,
        *,
        curator: Optional[CurationService] = None,
        ttl_days: float | None = None,
        max_pois: int | None = None,
        default_limit: int | None = None,
        tile_size_deg: float | None = None,
        batch_size: int | None = None,
        batch_delay_ms: int | None = None,
        preload_max_tiles: int | None = None,
    ):
        self.db = db
        self.source = source
        self.curator = curator
        self.tile_cache = TileCacheService(db, source)

        self.ttl_days = settings.poi_cache_ttl_days if ttl_days is None else float(ttl_days)
        self.max_pois = settings.max_pois if max_pois is None else int(max_pois)
        self.default_limit = settings.default_limit if default_limit is None else int(default_limit)
        self.tile_size_deg = settings.tile_size_deg if tile_size_deg is None else float(tile_size_deg)
        self.batch_size = max(1, settings.tile_batch_size if batch_size is None else int(batch_size))
        self.batch_delay_ms = settings.overpass_request_delay_ms if batch_delay_ms is None else int(batch_delay_ms)
        self.preload_max_tiles = settings.preload_max_tiles if preload_max_tiles is None else int(preload_max_tiles)

    # ── tiles ────────────────────────────────────────────────────

    async def _load_one(self, tile: Tile, categories: Sequence[str]) -> TileFetchOutcome:
        try:
            res: TileLoadResult = await self.tile_cache.load_tile(
                tile, categories, ttl_days=self.ttl_days, request_delay_ms=0
            )
        except SourceError as e:
            logger.error("[pois] tile %s failed: %s", tile.id, e)
            return TileFetchOutcome(tile_id=tile.id, ok=False, error=str(e))
        return TileFetchOutcome(tile_id=tile.id, ok=True, pois=res.pois, source=res.source)

    async def _load_in_batches(self, tiles: Sequence[Tile], categories: Sequence[str]) -> List[TileFetchOutcome]:
        outcomes: List[TileFetchOutcome] = []
        n_batches = math.ceil(len(tiles) / self.batch_size)
        for b, start in enumerate(range(0, len(tiles), self.batch_size)):
            batch = tiles[start : start + self.batch_size]
            if b > 0 and self.batch_delay_ms > 0:
                await asyncio.sleep(self.batch_delay_ms / 1000.0)
            results = await asyncio.gather(*(self._load_one(t, categories) for t in batch))
            outcomes.extend(results)
            logger.info(
                "[pois] batch %d/%d done (%d tiles, %d failed)",
                b + 1, n_batches, len(batch), sum(1 for r in results if not r.ok),
            )
        return outcomes

    async def _tile_path(
        self,
        route: Sequence[Sequence[float]],
        categories: Sequence[str],
        max_deviation_km: float,
    ) -> _TilePathResult:
        tiles = tiles_for_route(route, max_deviation_km, tile_size=self.tile_size_deg)
        logger.info("[pois] route covers %d tiles", len(tiles))

        lookup = self.tile_cache.get_cached_pois_for_tiles(tiles, categories, ttl_days=self.ttl_days)
        collected: List[Poi] = list(lookup.cached_pois)

        outcomes = await self._load_in_batches(lookup.missing_tiles, categories)
        for o in outcomes:
            collected.extend(o.pois)

        failed = sum(1 for o in outcomes if not o.ok)
        stats = TileStats(
            total=len(tiles),
            cached=len(lookup.superset_hits) + len(lookup.specific_hits),
            fetched=len(outcomes) - failed,
            failed=failed,
        )
        if tiles and failed * 2 > len(tiles):
            raise TileCoverageError(f"{failed} of {len(tiles)} tiles failed")

        pois = dedupe_pois(collected)
        logger.info("[pois] deduplicated %d -> %d POIs", len(collected), len(pois))
        pois = filter_by_distance(pois, route, max_deviation_km)
        pois = interleave_categories(sort_by_importance(pois))
        return _TilePathResult(pois=pois, stats=stats)

    # ── public ───────────────────────────────────────────────────

    async def query(self, req: PoisRequest) -> PoisResponse:
        bbox = validate_bbox(req.bbox)
        route = validate_route(req.route)
        f = req.filters

        categories = list(f.categories) if f.categories is not None else list(DEFAULT_CATEGORIES)
        limit = int(f.limit) if f.limit else self.default_limit
        max_dev = resolve_max_deviation(route, f.maxDistanceKm)

        tile_stats: Optional[TileStats] = None
        if f.useTileCache and route and max_dev:
            res = await self._tile_path(route, categories, max_dev)
            pois, tile_stats = res.pois, res.stats
        else:
            logger.info("[pois] direct source query")
            pois = await self.source.fetch_pois(bbox, route, categories, max_dev, limit * 2)

        total = len(pois)
        pois, truncated = cap_pois(pois, self.max_pois)

        ai_applied = False
        if f.useAi and pois and self.curator is not None:
            curated = await self.curator.curate(pois, route)
            if curated:
                pois = curated
                ai_applied = True

        if not ai_applied and len(pois) > limit:
            pois = stratify_along_route(pois, route, limit) if route else pois[:limit]

        return PoisResponse(
            pois=pois,
            metadata=PoisMetadata(
                total=total,
                filtered=len(pois),
                truncated=truncated,
                filtersApplied=FiltersApplied(
                    categories=categories,
                    maxDistance=max_dev,
                    limit=limit,
                    useAi=f.useAi,
                    aiApplied=ai_applied,
                    useTileCache=f.useTileCache,
                ),
                tiles=tile_stats,
            ),
        )

    async def preload_bbox(self, bbox: Any, categories: Optional[Sequence[str]] = None) -> PreloadResponse:
        """
        Warm the cache for every tile in a bbox. With the default category set
        this fills the superset tier that later narrower queries read from.
        """
        box = validate_bbox(bbox)
        cats = list(categories) if categories else list(ALL_CATEGORIES)
        tiles = tiles_for_bbox(box, tile_size=self.tile_size_deg, max_tiles=self.preload_max_tiles)

        lookup = self.tile_cache.get_cached_pois_for_tiles(tiles, cats, ttl_days=self.ttl_days)
        logger.info(
            "[pois] preload tiles=%d already_cached=%d to_fetch=%d",
            len(tiles), len(tiles) - len(lookup.missing_tiles), len(lookup.missing_tiles),
        )

        outcomes = await self._load_in_batches(lookup.missing_tiles, cats)
        failed = sum(1 for o in outcomes if not o.ok)
        return PreloadResponse(
            tiles=len(tiles),
            skipped=len(tiles) - len(lookup.missing_tiles),
            fetched=len(outcomes) - failed,
            failed=failed,
            pois=sum(len(o.pois) for o in outcomes),
            filtersHash=build_filters_hash(cats),
        )
