from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field

from routeguide.core.categories import category_label, determine_category, primary_attribute


OsmType = Literal["node", "way", "relation"]

# ──────────────────────────────────────────────────────────────
# POI
# ──────────────────────────────────────────────────────────────

class Poi(BaseModel):
    id: int
    type: OsmType = "node"
    lat: float
    lon: float
    name: str = "Unknown"
    tags: Dict[str, str] = Field(default_factory=dict)
    tourism: str = "unknown"        # primary attribute
    category: str = "other"
    categoryLabel: str = "Other"
    hasName: bool = False
    distance: Optional[float] = None        # km to route, when a route is known
    description: Optional[str] = None       # set by curation
    isTopPick: Optional[bool] = None        # set by curation

    @property
    def key(self) -> str:
        """Storage identity: unique across OSM element kinds."""
        return f"{self.type}/{self.id}"

    @classmethod
    def from_osm(
        cls,
        *,
        osm_type: str,
        osm_id: int,
        lat: float,
        lon: float,
        tags: Optional[Mapping[str, Any]],
    ) -> "Poi":
        clean = {str(k): str(v) for k, v in (tags or {}).items() if v is not None}
        name = clean.get("name")
        category = determine_category(clean)
        return cls(
            id=int(osm_id),
            type=osm_type,  # type: ignore[arg-type]
            lat=float(lat),
            lon=float(lon),
            name=name or "Unknown",
            tags=clean,
            tourism=primary_attribute(clean),
            category=category,
            categoryLabel=category_label(category),
            hasName=bool(name),
        )


# ──────────────────────────────────────────────────────────────
# Tiles + cache records
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class Tile:
    """Fixed-size grid cell. Pure geometry; id is derived from the cell indices."""
    id: str
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    @property
    def bbox(self) -> List[float]:
        # [minLat, maxLat, minLon, maxLon], same order as the request bbox
        return [self.min_lat, self.max_lat, self.min_lon, self.max_lon]


@dataclass(frozen=True, slots=True)
class TileCacheEntry:
    tile_id: str
    filters_hash: str
    fetched_at: Any     # ISO string (SQLite) or datetime (Postgres)
    min_lat: float = 0.0
    max_lat: float = 0.0
    min_lon: float = 0.0
    max_lon: float = 0.0


@dataclass(frozen=True, slots=True)
class TilePoiLink:
    tile_id: str
    filters_hash: str
    poi_id: str


# ──────────────────────────────────────────────────────────────
# /pois
# ──────────────────────────────────────────────────────────────

class PoiFilters(BaseModel):
    categories: Optional[List[str]] = None
    maxDistanceKm: Optional[float] = Field(default=None, alias="maxDistance")
    limit: Optional[int] = None
    useAi: bool = False
    useTileCache: bool = True

    model_config = {"populate_by_name": True}


class PoisRequest(BaseModel):
    # Validated by the query service, not here, so that bad shapes surface as
    # the same input error regardless of entry point.
    bbox: Optional[List[Any]] = None            # [minLat, maxLat, minLon, maxLon]
    route: Optional[List[Any]] = None           # [[lat, lon], ...]
    filters: PoiFilters = Field(default_factory=PoiFilters)


class FiltersApplied(BaseModel):
    categories: List[str]
    maxDistance: Optional[float] = None
    limit: int
    useAi: bool
    aiApplied: bool = False
    useTileCache: bool


class TileStats(BaseModel):
    total: int = 0
    cached: int = 0
    fetched: int = 0
    failed: int = 0


class PoisMetadata(BaseModel):
    total: int
    filtered: int
    truncated: bool
    filtersApplied: FiltersApplied
    tiles: Optional[TileStats] = None


class PoisResponse(BaseModel):
    pois: List[Poi]
    metadata: PoisMetadata


class PreloadRequest(BaseModel):
    bbox: List[Any]
    categories: Optional[List[str]] = None


class PreloadResponse(BaseModel):
    tiles: int
    skipped: int
    fetched: int
    failed: int
    pois: int
    filtersHash: str
