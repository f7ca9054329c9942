#!/usr/bin/env python3
"""
scripts/migrate_cache_to_postgres.py

Copy the local SQLite POI cache (pois, tiles, tile_pois) into Postgres.

Re-runnable:
  - pois / tiles are upserted (newer SQLite rows overwrite)
  - tile_pois links use ON CONFLICT DO NOTHING
The Postgres schema is created first if missing.

Usage:
  python -m scripts.migrate_cache_to_postgres --database-url postgres://...
"""

from __future__ import annotations

import argparse
import os
import sqlite3
import sys
import time
from typing import Dict, Iterable, List

from routeguide.core.settings import settings

DEFAULT_BATCH_SIZE = 5_000
DEFAULT_PAGE_SIZE = 1_000

TABLE_COLS: Dict[str, List[str]] = {
    "pois": ["id", "osm_type", "osm_id", "lat", "lon", "tags", "updated_at"],
    "tiles": ["id", "min_lat", "max_lat", "min_lon", "max_lon", "filters_hash", "fetched_at"],
    "tile_pois": ["tile_id", "filters_hash", "poi_id"],
}

PG_INSERT_SQL: Dict[str, str] = {
    "pois": """
        INSERT INTO pois (id, osm_type, osm_id, lat, lon, tags, updated_at) VALUES %s
        ON CONFLICT (id) DO UPDATE SET
          lat = EXCLUDED.lat, lon = EXCLUDED.lon,
          tags = EXCLUDED.tags, updated_at = EXCLUDED.updated_at
    """,
    "tiles": """
        INSERT INTO tiles (id, min_lat, max_lat, min_lon, max_lon, filters_hash, fetched_at) VALUES %s
        ON CONFLICT (id, filters_hash) DO UPDATE SET fetched_at = EXCLUDED.fetched_at
    """,
    "tile_pois": """
        INSERT INTO tile_pois (tile_id, filters_hash, poi_id) VALUES %s
        ON CONFLICT DO NOTHING
    """,
}

PG_TEMPLATE: Dict[str, str] = {
    "pois": "(%(id)s, %(osm_type)s, %(osm_id)s, %(lat)s, %(lon)s, %(tags)s::jsonb, %(updated_at)s)",
    "tiles": "(%(id)s, %(min_lat)s, %(max_lat)s, %(min_lon)s, %(max_lon)s, %(filters_hash)s, %(fetched_at)s)",
    "tile_pois": "(%(tile_id)s, %(filters_hash)s, %(poi_id)s)",
}


def count_sqlite_rows(sqlite_path: str, table: str) -> int:
    conn = sqlite3.connect(f"file:{sqlite_path}?mode=ro", uri=True)
    try:
        return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
    finally:
        conn.close()


def read_sqlite_batches(sqlite_path: str, table: str, batch_size: int) -> Iterable[List[dict]]:
    cols = TABLE_COLS[table]
    conn = sqlite3.connect(f"file:{sqlite_path}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    try:
        cur = conn.execute(f"SELECT {', '.join(cols)} FROM {table} ORDER BY rowid")
        batch: List[dict] = []
        for row in cur:
            d = dict(row)
            # orjson blobs -> text for the ::jsonb cast
            if isinstance(d.get("tags"), (bytes, bytearray)):
                d["tags"] = bytes(d["tags"]).decode("utf-8")
            batch.append(d)
            if len(batch) >= batch_size:
                yield batch
                batch = []
        if batch:
            yield batch
    finally:
        conn.close()


def migrate(sqlite_path: str, database_url: str, batch_size: int, page_size: int) -> None:
    try:
        import psycopg2
        from psycopg2.extras import execute_values
    except ImportError:
        print("ERROR: psycopg2-binary not installed.")
        print("  pip install 'routeguide[postgres]'")
        sys.exit(1)

    from routeguide.core.poi_db import PG_SCHEMA_SQL

    pg = psycopg2.connect(database_url)
    pg.autocommit = False
    with pg.cursor() as cur:
        cur.execute(PG_SCHEMA_SQL)
    pg.commit()
    print("[migrate] Postgres schema ready")

    for table in ("pois", "tiles", "tile_pois"):
        total = count_sqlite_rows(sqlite_path, table)
        print(f"[migrate] {table}: {total:,} rows in SQLite")
        if total == 0:
            continue

        done = 0
        t0 = time.monotonic()
        for batch_num, batch in enumerate(read_sqlite_batches(sqlite_path, table, batch_size), start=1):
            with pg.cursor() as cur:
                try:
                    execute_values(
                        cur,
                        PG_INSERT_SQL[table],
                        batch,
                        template=PG_TEMPLATE[table],
                        page_size=page_size,
                    )
                    pg.commit()
                except psycopg2.Error as e:
                    pg.rollback()
                    print(f"  {table} batch {batch_num} FAILED: {e}")
                    raise

            done += len(batch)
            elapsed = time.monotonic() - t0
            rate = done / elapsed if elapsed > 0 else 0
            print(f"  {table} batch {batch_num}: +{len(batch):,} | {done:,}/{total:,} | {rate:.0f} rows/s")

    pg.close()
    print("[migrate] Done.")


def main():
    parser = argparse.ArgumentParser(description="Copy the SQLite POI cache into Postgres")
    parser.add_argument("--sqlite", default=settings.cache_db_path)
    parser.add_argument("--database-url", default=settings.database_url)
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE)
    parser.add_argument("--page-size", type=int, default=DEFAULT_PAGE_SIZE)
    args = parser.parse_args()

    if not args.database_url:
        parser.error("--database-url or DATABASE_URL is required")
    if not os.path.exists(args.sqlite):
        parser.error(f"SQLite cache not found: {args.sqlite}")

    migrate(
        sqlite_path=args.sqlite,
        database_url=args.database_url,
        batch_size=args.batch_size,
        page_size=args.page_size,
    )


if __name__ == "__main__":
    main()
