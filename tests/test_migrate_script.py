import orjson

from routeguide.core.poi_db import SqlitePoiDB
from routeguide.core.tiles import tile_for_point
from scripts.migrate_cache_to_postgres import count_sqlite_rows, read_sqlite_batches

from conftest import make_poi


def test_reads_cache_tables_in_batches(tmp_path):
    path = str(tmp_path / "cache.db")
    db = SqlitePoiDB(path)
    tile = tile_for_point(52.52, 13.405)
    pois = [make_poi(i, 52.6, 13.3, name=f"M{i}", tourism="museum") for i in range(1, 6)]
    db.save_tile_with_pois(tile, "h1", pois)
    db.close()

    assert count_sqlite_rows(path, "pois") == 5
    batches = list(read_sqlite_batches(path, "pois", batch_size=2))
    assert [len(b) for b in batches] == [2, 2, 1]

    first = batches[0][0]
    assert first["id"] == "node/1"
    assert isinstance(first["tags"], str)
    assert orjson.loads(first["tags"])["tourism"] == "museum"

    links = [row for b in read_sqlite_batches(path, "tile_pois", 100) for row in b]
    assert {r["poi_id"] for r in links} == {p.key for p in pois}
    assert all(r["tile_id"] == tile.id and r["filters_hash"] == "h1" for r in links)

    tiles = next(iter(read_sqlite_batches(path, "tiles", 100)))
    assert tiles[0]["min_lat"] == tile.bbox[0]
