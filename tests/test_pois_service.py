"""End-to-end query orchestration over an in-memory cache and a fake source."""
import asyncio
from urllib.parse import parse_qs

import httpx
import pytest

from routeguide.core.categories import ALL_CATEGORIES, DEFAULT_CATEGORIES
from routeguide.core.contracts import PoiFilters, PoisRequest
from routeguide.core.errors import InvalidRequestError, TileCoverageError, TransientSourceError
from routeguide.core.keying import build_filters_hash
from routeguide.core.tiles import tile_for_point
from routeguide.services.pois import PoiQueryService, resolve_max_deviation
from routeguide.services.overpass import OverpassClient

from conftest import FakeSource, make_poi

BBOX = [52.3, 52.6, 13.0, 13.5]


def _service(db, source, **kw):
    kw.setdefault("batch_delay_ms", 0)
    kw.setdefault("ttl_days", 7)
    return PoiQueryService(db, source, **kw)


def _query(svc, **kw):
    return asyncio.run(svc.query(PoisRequest(**kw)))


class FakeCurator:
    def __init__(self, result="first"):
        self.result = result
        self.calls = 0
        self.routes = []

    async def curate(self, pois, route=None):
        self.calls += 1
        self.routes.append(route)
        if self.result is None:
            return None
        return [pois[0].model_copy(update={"isTopPick": True, "description": "Worth it"})]


class TestTilePath:
    def test_second_identical_query_is_served_from_cache(self, db, berlin_world, berlin_route):
        src = FakeSource(berlin_world)
        svc = _service(db, src)
        filters = PoiFilters(categories=["museum"], maxDistanceKm=10)

        first = _query(svc, bbox=BBOX, route=berlin_route, filters=filters)
        n_calls = len(src.calls)

        assert {p.key for p in first.pois} == {"node/1", "node/2", "node/3"}
        assert all(p.distance is not None and p.distance <= 10 for p in first.pois)
        assert first.metadata.tiles.total == n_calls
        assert first.metadata.tiles.fetched == n_calls
        assert first.metadata.tiles.cached == 0

        second = _query(svc, bbox=BBOX, route=berlin_route, filters=filters)

        assert len(src.calls) == n_calls
        assert {p.key for p in second.pois} == {p.key for p in first.pois}
        assert second.metadata.tiles.cached == second.metadata.tiles.total

    def test_every_tile_fetch_uses_tile_bbox_and_category_set(self, db, berlin_world, berlin_route):
        src = FakeSource(berlin_world)
        _query(_service(db, src), bbox=BBOX, route=berlin_route,
               filters=PoiFilters(categories=["museum"], maxDistanceKm=10))
        assert all(c["route"] is None and c["categories"] == ["museum"] for c in src.calls)

    def test_partial_failure_degrades_silently(self, db, berlin_world, berlin_route):
        potsdam = tile_for_point(52.40, 13.05)
        src = FakeSource(
            berlin_world,
            fail_when=lambda bbox: TransientSourceError("busy", status_code=429)
            if list(bbox) == potsdam.bbox else None,
        )
        res = _query(_service(db, src), bbox=BBOX, route=berlin_route,
                     filters=PoiFilters(categories=["museum"], maxDistanceKm=10))

        assert res.metadata.tiles.failed == 1
        assert {p.key for p in res.pois} == {"node/1", "node/2"}

    def test_majority_failure_raises(self, db, berlin_world, berlin_route):
        src = FakeSource(berlin_world, fail_when=lambda bbox: TransientSourceError("down", status_code=503))
        with pytest.raises(TileCoverageError):
            _query(_service(db, src), bbox=BBOX, route=berlin_route,
                   filters=PoiFilters(categories=["museum"], maxDistanceKm=10))

    def test_limit_uses_stratified_sample(self, db, berlin_world, berlin_route):
        res = _query(_service(db, FakeSource(berlin_world)), bbox=BBOX, route=berlin_route,
                     filters=PoiFilters(categories=["museum"], maxDistanceKm=10, limit=1))
        assert len(res.pois) == 1
        assert res.metadata.total == 3
        assert res.metadata.filtered == 1
        assert not res.metadata.truncated

    def test_global_cap_sets_truncated(self, db, berlin_world, berlin_route):
        res = _query(_service(db, FakeSource(berlin_world), max_pois=2), bbox=BBOX, route=berlin_route,
                     filters=PoiFilters(categories=["museum"], maxDistanceKm=10))
        assert res.metadata.total == 3
        assert res.metadata.truncated
        assert len(res.pois) == 2


class TestDefaultsAndDirectPath:
    def test_defaults(self, db, berlin_world, berlin_route):
        res = _query(_service(db, FakeSource(berlin_world)), bbox=BBOX, route=berlin_route)
        applied = res.metadata.filtersApplied
        assert applied.categories == DEFAULT_CATEGORIES
        assert applied.limit == 50
        assert applied.maxDistance == 5.0
        assert applied.useTileCache and not applied.useAi

    def test_explicit_empty_categories_are_kept(self, db, berlin_world, berlin_route):
        res = _query(_service(db, FakeSource(berlin_world)), bbox=BBOX, route=berlin_route,
                     filters=PoiFilters(categories=[], maxDistanceKm=10))
        assert res.metadata.filtersApplied.categories == []
        assert res.pois == []

    def test_direct_path_without_tile_cache(self, db, berlin_world, berlin_route):
        src = FakeSource(berlin_world)
        res = _query(_service(db, src), bbox=BBOX, route=berlin_route,
                     filters=PoiFilters(categories=["museum"], maxDistanceKm=10, useTileCache=False))
        assert len(src.calls) == 1
        call = src.calls[0]
        assert call["bbox"] == BBOX
        assert call["route"] == berlin_route
        assert call["max_deviation_km"] == 10
        assert call["limit"] == 100
        assert res.metadata.tiles is None

    def test_direct_path_without_route(self, db, berlin_world):
        src = FakeSource(berlin_world)
        res = _query(_service(db, src), bbox=BBOX, filters=PoiFilters(categories=["museum"], limit=2))
        assert src.calls[0]["route"] is None
        assert src.calls[0]["max_deviation_km"] is None
        assert len(res.pois) == 2

    def test_resolve_max_deviation(self):
        assert resolve_max_deviation(None, 10) is None
        assert resolve_max_deviation([[52.0, 13.0]], 3) == 3.0
        assert resolve_max_deviation([[52.0, 13.0]], None) is None
        # ~1112 km / 20 clamps to 50
        assert resolve_max_deviation([[42.0, 13.0], [52.0, 13.0]], None) == 50.0


class TestCuration:
    def test_applied(self, db, berlin_world, berlin_route):
        curator = FakeCurator()
        res = _query(_service(db, FakeSource(berlin_world), curator=curator), bbox=BBOX, route=berlin_route,
                     filters=PoiFilters(categories=["museum"], maxDistanceKm=10, useAi=True))
        assert curator.calls == 1
        assert curator.routes == [berlin_route]
        assert res.metadata.filtersApplied.aiApplied
        assert res.pois[0].isTopPick

    def test_unavailable_falls_back(self, db, berlin_world, berlin_route):
        curator = FakeCurator(result=None)
        res = _query(_service(db, FakeSource(berlin_world), curator=curator), bbox=BBOX, route=berlin_route,
                     filters=PoiFilters(categories=["museum"], maxDistanceKm=10, useAi=True, limit=2))
        assert not res.metadata.filtersApplied.aiApplied
        assert len(res.pois) == 2


class TestValidation:
    @pytest.mark.parametrize(
        "bbox",
        [None, [52.0, 53.0, 13.0], [52.0, 53.0, 13.0, "14"], [True, 53.0, 13.0, 14.0], [52.0, 53.0, 13.0, float("nan")]],
    )
    def test_bad_bbox(self, db, bbox):
        src = FakeSource()
        with pytest.raises(InvalidRequestError):
            _query(_service(db, src), bbox=bbox)
        assert src.calls == []

    @pytest.mark.parametrize("route", [[[52.0]], [["52.0", 13.0]], [[200.0, 13.0]], [52.0, 13.0]])
    def test_bad_route(self, db, route):
        with pytest.raises(InvalidRequestError):
            _query(_service(db, FakeSource()), bbox=BBOX, route=route)


class TestPreload:
    def test_preload_fills_superset_tier(self, db, berlin_world):
        src = FakeSource(berlin_world)
        svc = _service(db, src)

        res = asyncio.run(svc.preload_bbox([52.5, 52.6, 13.3, 13.4]))
        assert res.tiles == 1
        assert res.fetched == 1
        assert res.pois == 2
        assert res.filtersHash == build_filters_hash(ALL_CATEGORIES)

        again = asyncio.run(svc.preload_bbox([52.5, 52.6, 13.3, 13.4]))
        assert again.skipped == 1
        assert len(src.calls) == 1

        q = _query(svc, bbox=BBOX, route=[[52.52, 13.40], [52.53, 13.41]],
                   filters=PoiFilters(categories=["museum"], maxDistanceKm=2))
        assert [p.key for p in q.pois] == ["node/1"]
        assert q.metadata.tiles.cached == 1
        assert len(src.calls) == 1


class TestMalformedSourceResponses:
    POTSDAM = tile_for_point(52.40, 13.05)

    def _overpass(self):
        potsdam_area = "({},{},{},{})".format(
            self.POTSDAM.min_lat, self.POTSDAM.min_lon, self.POTSDAM.max_lat, self.POTSDAM.max_lon
        )
        good = {"elements": [{"type": "node", "id": 1, "lat": 52.52, "lon": 13.405,
                              "tags": {"name": "Altes Museum", "tourism": "museum"}}]}

        def handler(request: httpx.Request) -> httpx.Response:
            ql = parse_qs(request.content.decode())["data"][0]
            if potsdam_area in ql:
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=good)

        return OverpassClient(
            ["https://a.test/api/interpreter"], max_retries=0, retry_delay_ms=0,
            transport=httpx.MockTransport(handler),
        )

    def test_bad_tile_body_only_costs_that_tile(self, db, berlin_route):
        res = _query(_service(db, self._overpass()), bbox=BBOX, route=berlin_route,
                     filters=PoiFilters(categories=["museum"], maxDistanceKm=10))
        assert res.metadata.tiles.failed == 1
        assert res.metadata.tiles.fetched == res.metadata.tiles.total - 1
        assert [p.key for p in res.pois] == ["node/1"]

    def test_bad_tile_body_falls_back_to_stale_links(self, db, berlin_route):
        stale = make_poi(3, 52.40, 13.05, name="Potsdam Museum", tourism="museum")
        db.save_tile_with_pois(self.POTSDAM, build_filters_hash(["museum"]), [stale],
                               fetched_at="2020-01-01T00:00:00Z")
        res = _query(_service(db, self._overpass()), bbox=BBOX, route=berlin_route,
                     filters=PoiFilters(categories=["museum"], maxDistanceKm=10))
        assert res.metadata.tiles.failed == 0
        assert {p.key for p in res.pois} == {"node/1", "node/3"}
