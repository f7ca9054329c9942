"""
Tile cache service: two-tier lookup (superset / specific filters hash) in
front of the POI source, with stale-cache fallback when a fetch fails.

Per tile, per query:
  fresh superset entry -> linked POIs filtered to the requested categories
  fresh specific entry -> linked POIs as stored
  otherwise            -> fetch, persist, return
                          (on source failure: stale specific links, or raise)
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Literal, Protocol, Sequence

from routeguide.core.categories import matches_categories
from routeguide.core.contracts import Poi, Tile
from routeguide.core.errors import SourceError
from routeguide.core.keying import build_filters_hash, superset_filters_hash
from routeguide.core.poi_db import PoiDB
from routeguide.core.settings import settings
from routeguide.core.time import is_fresh

logger = logging.getLogger(__name__)

TileSource = Literal["superset", "specific", "fetched", "stale"]


class PoiSource(Protocol):
    async def fetch_pois(
        self,
        bbox: Sequence[float] | None,
        route: Sequence[Sequence[float]] | None,
        categories: Sequence[str],
        max_deviation_km: float | None,
        limit: int | None,
    ) -> List[Poi]:
        ...


@dataclass
class CacheLookupResult:
    cached_pois: List[Poi] = field(default_factory=list)
    missing_tiles: List[Tile] = field(default_factory=list)
    superset_hits: List[str] = field(default_factory=list)
    specific_hits: List[str] = field(default_factory=list)


@dataclass
class TileLoadResult:
    tile_id: str
    pois: List[Poi]
    source: TileSource


class TileCacheService:
    def __init__(self, db: PoiDB, source: PoiSource, *, tile_limit: int | None = None):
        self.db = db
        self.source = source
        self.tile_limit = settings.overpass_tile_limit if tile_limit is None else int(tile_limit)

    # ── helpers ──────────────────────────────────────────────────

    def _linked_pois(self, tile_ids: Sequence[str], filters_hash: str) -> List[Poi]:
        if not tile_ids:
            return []
        links = self.db.get_all_pois_for_tiles(list(tile_ids), filters_hash)
        poi_ids: List[str] = []
        seen = set()
        for link in links:
            if link.poi_id not in seen:
                seen.add(link.poi_id)
                poi_ids.append(link.poi_id)
        return self.db.get_pois_by_ids(poi_ids)

    @staticmethod
    def _only_categories(pois: Sequence[Poi], categories: Sequence[str]) -> List[Poi]:
        return [p for p in pois if matches_categories(p.tags, categories)]

    def _persist(self, tile: Tile, filters_hash: str, pois: Sequence[Poi]) -> None:
        if self.db.supports_atomic_save:
            self.db.save_tile_with_pois(tile, filters_hash, pois)
            return

        # Sequential fallback; readers may briefly see the tile with no links.
        self.db.upsert_tile(tile, filters_hash)
        self.db.clear_tile_pois(tile.id, filters_hash)
        for p in pois:
            self.db.upsert_poi(p)
            self.db.link_poi_to_tile(tile.id, p.key, filters_hash)

    # ── bulk lookup ──────────────────────────────────────────────

    def get_cached_pois_for_tiles(
        self,
        tiles: Sequence[Tile],
        categories: Sequence[str],
        *,
        ttl_days: float,
    ) -> CacheLookupResult:
        if not tiles:
            return CacheLookupResult()

        sup_hash = superset_filters_hash()
        spec_hash = build_filters_hash(categories)
        tile_ids = [t.id for t in tiles]

        sup_fresh = {
            e.tile_id
            for e in self.db.get_tiles_by_ids(tile_ids, sup_hash)
            if is_fresh(e.fetched_at, ttl_days)
        }

        remaining = [tid for tid in tile_ids if tid not in sup_fresh]
        spec_fresh: set = set()
        if remaining and spec_hash != sup_hash:
            spec_fresh = {
                e.tile_id
                for e in self.db.get_tiles_by_ids(remaining, spec_hash)
                if is_fresh(e.fetched_at, ttl_days)
            }

        superset_hits = [tid for tid in tile_ids if tid in sup_fresh]
        specific_hits = [tid for tid in tile_ids if tid in spec_fresh]

        cached: List[Poi] = []
        if superset_hits:
            pois = self._linked_pois(superset_hits, sup_hash)
            cached.extend(pois if spec_hash == sup_hash else self._only_categories(pois, categories))
        if specific_hits:
            cached.extend(self._linked_pois(specific_hits, spec_hash))

        missing = [t for t in tiles if t.id not in sup_fresh and t.id not in spec_fresh]

        logger.info(
            "[tile_cache] lookup tiles=%d superset=%d specific=%d missing=%d pois=%d",
            len(tiles), len(superset_hits), len(specific_hits), len(missing), len(cached),
        )
        return CacheLookupResult(
            cached_pois=cached,
            missing_tiles=missing,
            superset_hits=superset_hits,
            specific_hits=specific_hits,
        )

    # ── single tile ──────────────────────────────────────────────

    async def load_tile(
        self,
        tile: Tile,
        categories: Sequence[str],
        *,
        ttl_days: float,
        request_delay_ms: int = 0,
    ) -> TileLoadResult:
        sup_hash = superset_filters_hash()
        spec_hash = build_filters_hash(categories)

        if self.db.is_tile_fresh(tile.id, sup_hash, ttl_days):
            pois = self._linked_pois([tile.id], sup_hash)
            if spec_hash != sup_hash:
                pois = self._only_categories(pois, categories)
            logger.info("[tile_cache] superset hit tile=%s pois=%d", tile.id, len(pois))
            return TileLoadResult(tile.id, pois, "superset")

        if spec_hash != sup_hash and self.db.is_tile_fresh(tile.id, spec_hash, ttl_days):
            pois = self._linked_pois([tile.id], spec_hash)
            logger.info("[tile_cache] specific hit tile=%s pois=%d", tile.id, len(pois))
            return TileLoadResult(tile.id, pois, "specific")

        if request_delay_ms > 0:
            await asyncio.sleep(request_delay_ms / 1000.0)

        logger.info("[tile_cache] miss tile=%s_%s, fetching", tile.id, spec_hash)
        try:
            pois = await self.source.fetch_pois(tile.bbox, None, list(categories), None, self.tile_limit)
        except SourceError as e:
            logger.error("[tile_cache] fetch failed tile=%s_%s: %s", tile.id, spec_hash, e)
            stale_ids = self.db.get_pois_for_tile(tile.id, spec_hash)
            if stale_ids:
                logger.warning("[tile_cache] serving stale cache tile=%s ids=%d", tile.id, len(stale_ids))
                return TileLoadResult(tile.id, self.db.get_pois_by_ids(stale_ids), "stale")
            raise

        self._persist(tile, spec_hash, pois)
        logger.info("[tile_cache] cached %d POIs tile=%s_%s", len(pois), tile.id, spec_hash)
        return TileLoadResult(tile.id, list(pois), "fetched")

    async def load_tile_pois(
        self,
        tile: Tile,
        categories: Sequence[str],
        *,
        ttl_days: float,
        request_delay_ms: int = 0,
    ) -> List[Poi]:
        result = await self.load_tile(
            tile, categories, ttl_days=ttl_days, request_delay_ms=request_delay_ms
        )
        return result.pois
