"""SQLite persistence backend."""
import pytest

from routeguide.core.errors import PersistenceError
from routeguide.core.poi_db import SqlitePoiDB, create_poi_db
from routeguide.core.tiles import tile_for_point

from conftest import make_poi

OLD = "2020-01-01T00:00:00Z"


class TestPois:
    def test_upsert_and_fetch_in_request_order(self, db):
        a = make_poi(1, 52.0, 13.0, tourism="museum")
        b = make_poi(2, 52.1, 13.1, osm_type="way", historic="castle")
        db.upsert_pois([a, b])

        out = db.get_pois_by_ids(["way/2", "node/1", "node/404"])
        assert [p.key for p in out] == ["way/2", "node/1"]
        assert out[1].tags["tourism"] == "museum"
        assert out[0].category == "castle"

    def test_upsert_is_last_write_wins(self, db):
        db.upsert_poi(make_poi(1, 52.0, 13.0, name="Old", tourism="museum"))
        db.upsert_poi(make_poi(1, 52.5, 13.5, name="New", tourism="museum"))
        p = db.get_poi_by_id("node/1")
        assert p.name == "New"
        assert (p.lat, p.lon) == (52.5, 13.5)

    def test_id_lists_are_chunked(self, db):
        pois = [make_poi(i, 52.0, 13.0, tourism="museum") for i in range(1, 1951)]
        assert db.upsert_pois(pois) == 1950
        assert len(db.get_pois_by_ids([p.key for p in pois])) == 1950

    def test_empty_inputs(self, db):
        assert db.get_pois_by_ids([]) == []
        assert db.get_tiles_by_ids([], "h") == []
        assert db.get_all_pois_for_tiles([], "h") == []
        assert db.upsert_pois([]) == 0


class TestTilesAndLinks:
    def test_tile_freshness(self, db):
        t = tile_for_point(52.52, 13.405)
        assert not db.is_tile_fresh(t.id, "h1", 7)

        db.upsert_tile(t, "h1")
        assert db.is_tile_fresh(t.id, "h1", 7)
        assert not db.is_tile_fresh(t.id, "h2", 7)

        db.upsert_tile(t, "h1", fetched_at=OLD)
        assert not db.is_tile_fresh(t.id, "h1", 7)
        assert db.get_tile_by_id(t.id, "h1").fetched_at == OLD

    def test_links_insert_ignore_and_clear(self, db):
        t = tile_for_point(52.52, 13.405)
        db.link_poi_to_tile(t.id, "node/1", "h1")
        db.link_poi_to_tile(t.id, "node/1", "h1")
        db.link_poi_to_tile(t.id, "node/2", "h1")
        db.link_poi_to_tile(t.id, "node/3", "h2")

        assert sorted(db.get_pois_for_tile(t.id, "h1")) == ["node/1", "node/2"]

        db.clear_tile_pois(t.id, "h1")
        assert db.get_pois_for_tile(t.id, "h1") == []
        assert db.get_pois_for_tile(t.id, "h2") == ["node/3"]

    def test_bulk_tiles_and_links(self, db):
        t1 = tile_for_point(52.52, 13.405)
        t2 = tile_for_point(52.40, 13.05)
        db.upsert_tile(t1, "h1")
        db.upsert_tile(t2, "h2")
        db.link_poi_to_tile(t1.id, "node/1", "h1")
        db.link_poi_to_tile(t2.id, "node/2", "h1")

        assert [e.tile_id for e in db.get_tiles_by_ids([t1.id, t2.id], "h1")] == [t1.id]
        links = db.get_all_pois_for_tiles([t1.id, t2.id], "h1")
        assert {(l.tile_id, l.poi_id) for l in links} == {(t1.id, "node/1"), (t2.id, "node/2")}

    def test_atomic_save_replaces_links(self, db):
        t = tile_for_point(52.52, 13.405)
        db.save_tile_with_pois(t, "h1", [make_poi(1, 52.6, 13.3, tourism="museum")], fetched_at=OLD)
        db.save_tile_with_pois(t, "h1", [make_poi(2, 52.6, 13.3, tourism="museum")])

        assert db.get_pois_for_tile(t.id, "h1") == ["node/2"]
        assert db.get_poi_by_id("node/1") is not None
        assert db.is_tile_fresh(t.id, "h1", 7)


class TestFailures:
    def test_driver_errors_become_persistence_errors(self):
        d = SqlitePoiDB(":memory:")
        d.close()
        with pytest.raises(PersistenceError):
            d.get_pois_by_ids(["node/1"])

    def test_factory_without_url_uses_sqlite(self, tmp_path):
        d = create_poi_db(database_url=None, sqlite_path=str(tmp_path / "cache" / "pois.db"))
        try:
            assert isinstance(d, SqlitePoiDB)
            assert (tmp_path / "cache" / "pois.db").exists()
        finally:
            d.close()
