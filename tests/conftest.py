from __future__ import annotations

from typing import Callable, Dict, List, Optional, Sequence

import pytest

from routeguide.core.categories import matches_categories
from routeguide.core.contracts import Poi
from routeguide.core.poi_db import SqlitePoiDB


def make_poi(
    osm_id: int,
    lat: float,
    lon: float,
    *,
    name: Optional[str] = "Somewhere",
    osm_type: str = "node",
    **tags: str,
) -> Poi:
    all_tags: Dict[str, str] = dict(tags)
    if name:
        all_tags["name"] = name
    return Poi.from_osm(osm_type=osm_type, osm_id=osm_id, lat=lat, lon=lon, tags=all_tags)


class FakeSource:
    """
    Stand-in for the Overpass client: serves a fixed POI world, filtered by
    bbox and category like the real query would be.
    """

    def __init__(
        self,
        world: Sequence[Poi] = (),
        *,
        fail_when: Optional[Callable[[Optional[Sequence[float]]], Optional[Exception]]] = None,
    ):
        self.world = list(world)
        self.fail_when = fail_when
        self.calls: List[dict] = []

    async def fetch_pois(self, bbox, route, categories, max_deviation_km, limit):
        self.calls.append(
            {
                "bbox": list(bbox) if bbox is not None else None,
                "route": route,
                "categories": list(categories),
                "max_deviation_km": max_deviation_km,
                "limit": limit,
            }
        )
        if self.fail_when is not None:
            err = self.fail_when(bbox)
            if err is not None:
                raise err

        out = []
        for p in self.world:
            if not matches_categories(p.tags, categories):
                continue
            if route is None and bbox is not None:
                min_lat, max_lat, min_lon, max_lon = bbox
                if not (min_lat <= p.lat < max_lat and min_lon <= p.lon < max_lon):
                    continue
            out.append(p)
        return out[:limit] if limit else out


@pytest.fixture
def db():
    d = SqlitePoiDB(":memory:")
    yield d
    d.close()


@pytest.fixture
def berlin_world() -> List[Poi]:
    return [
        make_poi(1, 52.5200, 13.4050, name="Altes Museum", tourism="museum"),
        make_poi(2, 52.4500, 13.3000, name="Museum Dahlem", tourism="museum"),
        make_poi(3, 52.4000, 13.0500, name="Potsdam Museum", tourism="museum"),
        make_poi(4, 52.4010, 13.0510, name="Schloss Cecilienhof", historic="castle"),
        make_poi(5, 52.5210, 13.4060, name="Cafe Einstein", amenity="restaurant"),
        # ~50 km north of the route
        make_poi(6, 52.9500, 13.4000, name="Far Away Museum", tourism="museum"),
    ]


@pytest.fixture
def berlin_route() -> List[List[float]]:
    return [[52.52, 13.405], [52.45, 13.30], [52.40, 13.05]]
