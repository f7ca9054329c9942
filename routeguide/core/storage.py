from __future__ import annotations

import sqlite3
from pathlib import Path


# ──────────────────────────────────────────────────────────────
# Connections
# ──────────────────────────────────────────────────────────────

def connect_sqlite(path: str) -> sqlite3.Connection:
    """
    Open a RW SQLite connection with sane pragmas.

    IMPORTANT:
    - SQLite will NOT create parent directories.
    - WAL mode requires the directory to be writable (creates -wal/-shm).
    """
    if path != ":memory:":
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


# ──────────────────────────────────────────────────────────────
# Schema
# ──────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pois (
  id TEXT PRIMARY KEY,            -- '{osm_type}/{osm_id}'
  osm_type TEXT NOT NULL,         -- 'node'|'way'|'relation'
  osm_id INTEGER NOT NULL,
  lat REAL NOT NULL,
  lon REAL NOT NULL,
  tags BLOB NOT NULL,             -- orjson dump of tags
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tiles (
  id TEXT NOT NULL,
  min_lat REAL NOT NULL,
  max_lat REAL NOT NULL,
  min_lon REAL NOT NULL,
  max_lon REAL NOT NULL,
  filters_hash TEXT NOT NULL,
  fetched_at TEXT NOT NULL,
  PRIMARY KEY (id, filters_hash)
);

CREATE TABLE IF NOT EXISTS tile_pois (
  tile_id TEXT NOT NULL,
  filters_hash TEXT NOT NULL,
  poi_id TEXT NOT NULL,
  PRIMARY KEY (tile_id, filters_hash, poi_id)
);

CREATE INDEX IF NOT EXISTS idx_pois_coords ON pois(lat, lon);
CREATE INDEX IF NOT EXISTS idx_tiles_filters ON tiles(filters_hash);
CREATE INDEX IF NOT EXISTS idx_tile_pois_tile ON tile_pois(tile_id, filters_hash);
CREATE INDEX IF NOT EXISTS idx_tile_pois_poi ON tile_pois(poi_id);
"""


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(_SCHEMA_SQL)
    conn.commit()
