"""
routeguide/core/poi_db.py

Persistence port for the tile cache: POIs, tile cache entries and the
tile <-> POI link table.

Two backends:
  - SqlitePoiDB:   local dev / single instance (WAL SQLite file)
  - PostgresPoiDB: shared deployments (psycopg2 connection pool, JSONB tags)

Factory function `create_poi_db()` picks one at startup and falls back to
SQLite when the Postgres init fails.

Every driver exception is re-raised as PersistenceError; nothing here masks
a storage failure.
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import orjson

from routeguide.core.contracts import Poi, Tile, TileCacheEntry, TilePoiLink
from routeguide.core.errors import PersistenceError
from routeguide.core.storage import connect_sqlite, ensure_schema
from routeguide.core.time import is_fresh, utc_now_iso

logger = logging.getLogger(__name__)

# SQLite caps bound parameters per statement (999 on older builds).
ID_BATCH_SIZE = 900


def _chunked(items: Sequence[Any], chunk_size: int) -> Iterator[Sequence[Any]]:
    if chunk_size <= 0:
        yield items
        return
    for i in range(0, len(items), chunk_size):
        yield items[i : i + chunk_size]


def _tags_from_db(raw: Any) -> Dict[str, str]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, memoryview):
        raw = raw.tobytes()
    return orjson.loads(raw)


# ── Abstract interface ───────────────────────────────────────────────

class PoiDB(ABC):
    """POI + tile cache storage consumed by the tile cache service."""

    # Backends that can replace a tile's links in one transaction set this
    # and implement save_tile_with_pois().
    supports_atomic_save: bool = False

    # POIs
    @abstractmethod
    def upsert_poi(self, poi: Poi) -> None:
        ...

    @abstractmethod
    def upsert_pois(self, pois: Sequence[Poi]) -> int:
        ...

    @abstractmethod
    def get_poi_by_id(self, poi_id: str) -> Optional[Poi]:
        ...

    @abstractmethod
    def get_pois_by_ids(self, ids: Sequence[str]) -> List[Poi]:
        ...

    # Tiles
    @abstractmethod
    def get_tile_by_id(self, tile_id: str, filters_hash: str) -> Optional[TileCacheEntry]:
        ...

    @abstractmethod
    def upsert_tile(self, tile: Tile, filters_hash: str, *, fetched_at: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def get_tiles_by_ids(self, ids: Sequence[str], filters_hash: str) -> List[TileCacheEntry]:
        ...

    # Links
    @abstractmethod
    def link_poi_to_tile(self, tile_id: str, poi_id: str, filters_hash: str) -> None:
        ...

    @abstractmethod
    def get_pois_for_tile(self, tile_id: str, filters_hash: str) -> List[str]:
        ...

    @abstractmethod
    def clear_tile_pois(self, tile_id: str, filters_hash: str) -> None:
        ...

    @abstractmethod
    def get_all_pois_for_tiles(self, tile_ids: Sequence[str], filters_hash: str) -> List[TilePoiLink]:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def is_tile_fresh(self, tile_id: str, filters_hash: str, ttl_days: float) -> bool:
        entry = self.get_tile_by_id(tile_id, filters_hash)
        if entry is None:
            return False
        return is_fresh(entry.fetched_at, ttl_days)

    def save_tile_with_pois(
        self,
        tile: Tile,
        filters_hash: str,
        pois: Sequence[Poi],
        *,
        fetched_at: Optional[str] = None,
    ) -> None:
        raise NotImplementedError(f"{type(self).__name__} has no atomic tile save")


# ── SQLite backend ───────────────────────────────────────────────────

_UPSERT_POI_SQLITE = """
INSERT INTO pois (id, osm_type, osm_id, lat, lon, tags, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
  lat=excluded.lat,
  lon=excluded.lon,
  tags=excluded.tags,
  updated_at=excluded.updated_at
"""

_UPSERT_TILE_SQLITE = """
INSERT INTO tiles (id, min_lat, max_lat, min_lon, max_lon, filters_hash, fetched_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id, filters_hash) DO UPDATE SET
  fetched_at=excluded.fetched_at
"""

_LINK_SQLITE = """
INSERT OR IGNORE INTO tile_pois (tile_id, filters_hash, poi_id)
VALUES (?, ?, ?)
"""


class SqlitePoiDB(PoiDB):
    supports_atomic_save = True

    def __init__(self, db_path: str):
        self._path = db_path
        try:
            self._conn = connect_sqlite(db_path)
            ensure_schema(self._conn)
        except sqlite3.Error as e:
            raise PersistenceError(f"sqlite_open_failed path={db_path} err={e!r}") from e
        logger.info("[poi_db] SQLite opened: %s", db_path)

    @contextmanager
    def _errors(self, op: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as e:
            raise PersistenceError(f"sqlite_{op}_failed err={e!r}") from e

    @staticmethod
    def _poi_row(poi: Poi, now: str) -> tuple:
        return (poi.key, poi.type, int(poi.id), float(poi.lat), float(poi.lon), orjson.dumps(poi.tags), now)

    @staticmethod
    def _row_to_poi(row: sqlite3.Row) -> Poi:
        return Poi.from_osm(
            osm_type=row["osm_type"],
            osm_id=row["osm_id"],
            lat=row["lat"],
            lon=row["lon"],
            tags=_tags_from_db(row["tags"]),
        )

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> TileCacheEntry:
        return TileCacheEntry(
            tile_id=row["id"],
            filters_hash=row["filters_hash"],
            fetched_at=row["fetched_at"],
            min_lat=row["min_lat"],
            max_lat=row["max_lat"],
            min_lon=row["min_lon"],
            max_lon=row["max_lon"],
        )

    # POIs

    def upsert_poi(self, poi: Poi) -> None:
        with self._errors("upsert_poi"):
            self._conn.execute(_UPSERT_POI_SQLITE, self._poi_row(poi, utc_now_iso()))
            self._conn.commit()

    def upsert_pois(self, pois: Sequence[Poi]) -> int:
        if not pois:
            return 0
        now = utc_now_iso()
        with self._errors("upsert_pois"):
            self._conn.executemany(_UPSERT_POI_SQLITE, [self._poi_row(p, now) for p in pois])
            self._conn.commit()
        return len(pois)

    def get_poi_by_id(self, poi_id: str) -> Optional[Poi]:
        with self._errors("get_poi"):
            row = self._conn.execute("SELECT * FROM pois WHERE id = ?", (poi_id,)).fetchone()
        return self._row_to_poi(row) if row else None

    def get_pois_by_ids(self, ids: Sequence[str]) -> List[Poi]:
        if not ids:
            return []
        found: Dict[str, Poi] = {}
        with self._errors("get_pois"):
            for batch in _chunked(list(ids), ID_BATCH_SIZE):
                placeholders = ",".join("?" for _ in batch)
                rows = self._conn.execute(
                    f"SELECT * FROM pois WHERE id IN ({placeholders})", tuple(batch)
                ).fetchall()
                for r in rows:
                    found[r["id"]] = self._row_to_poi(r)
        return [found[i] for i in ids if i in found]

    # Tiles

    def get_tile_by_id(self, tile_id: str, filters_hash: str) -> Optional[TileCacheEntry]:
        with self._errors("get_tile"):
            row = self._conn.execute(
                "SELECT * FROM tiles WHERE id = ? AND filters_hash = ?",
                (tile_id, filters_hash),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def _tile_row(self, tile: Tile, filters_hash: str, fetched_at: Optional[str]) -> tuple:
        return (
            tile.id,
            float(tile.min_lat),
            float(tile.max_lat),
            float(tile.min_lon),
            float(tile.max_lon),
            filters_hash,
            fetched_at or utc_now_iso(),
        )

    def upsert_tile(self, tile: Tile, filters_hash: str, *, fetched_at: Optional[str] = None) -> None:
        with self._errors("upsert_tile"):
            self._conn.execute(_UPSERT_TILE_SQLITE, self._tile_row(tile, filters_hash, fetched_at))
            self._conn.commit()

    def get_tiles_by_ids(self, ids: Sequence[str], filters_hash: str) -> List[TileCacheEntry]:
        if not ids:
            return []
        out: List[TileCacheEntry] = []
        with self._errors("get_tiles"):
            for batch in _chunked(list(ids), ID_BATCH_SIZE):
                placeholders = ",".join("?" for _ in batch)
                rows = self._conn.execute(
                    f"SELECT * FROM tiles WHERE id IN ({placeholders}) AND filters_hash = ?",
                    (*batch, filters_hash),
                ).fetchall()
                out.extend(self._row_to_entry(r) for r in rows)
        return out

    # Links

    def link_poi_to_tile(self, tile_id: str, poi_id: str, filters_hash: str) -> None:
        with self._errors("link"):
            self._conn.execute(_LINK_SQLITE, (tile_id, filters_hash, poi_id))
            self._conn.commit()

    def get_pois_for_tile(self, tile_id: str, filters_hash: str) -> List[str]:
        with self._errors("tile_links"):
            rows = self._conn.execute(
                "SELECT poi_id FROM tile_pois WHERE tile_id = ? AND filters_hash = ?",
                (tile_id, filters_hash),
            ).fetchall()
        return [r["poi_id"] for r in rows]

    def clear_tile_pois(self, tile_id: str, filters_hash: str) -> None:
        with self._errors("clear_links"):
            self._conn.execute(
                "DELETE FROM tile_pois WHERE tile_id = ? AND filters_hash = ?",
                (tile_id, filters_hash),
            )
            self._conn.commit()

    def get_all_pois_for_tiles(self, tile_ids: Sequence[str], filters_hash: str) -> List[TilePoiLink]:
        if not tile_ids:
            return []
        out: List[TilePoiLink] = []
        with self._errors("tiles_links"):
            for batch in _chunked(list(tile_ids), ID_BATCH_SIZE):
                placeholders = ",".join("?" for _ in batch)
                rows = self._conn.execute(
                    f"SELECT tile_id, poi_id FROM tile_pois "
                    f"WHERE tile_id IN ({placeholders}) AND filters_hash = ?",
                    (*batch, filters_hash),
                ).fetchall()
                out.extend(TilePoiLink(r["tile_id"], filters_hash, r["poi_id"]) for r in rows)
        return out

    def save_tile_with_pois(
        self,
        tile: Tile,
        filters_hash: str,
        pois: Sequence[Poi],
        *,
        fetched_at: Optional[str] = None,
    ) -> None:
        now = utc_now_iso()
        with self._errors("save_tile"):
            # Connection context manager: one transaction, rollback on error
            with self._conn:
                self._conn.execute(_UPSERT_TILE_SQLITE, self._tile_row(tile, filters_hash, fetched_at))
                self._conn.execute(
                    "DELETE FROM tile_pois WHERE tile_id = ? AND filters_hash = ?",
                    (tile.id, filters_hash),
                )
                if pois:
                    self._conn.executemany(_UPSERT_POI_SQLITE, [self._poi_row(p, now) for p in pois])
                    self._conn.executemany(
                        _LINK_SQLITE, [(tile.id, filters_hash, p.key) for p in pois]
                    )

    def close(self) -> None:
        with self._errors("close"):
            self._conn.close()


# ── Postgres backend ─────────────────────────────────────────────────

PG_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pois (
  id TEXT PRIMARY KEY,
  osm_type TEXT NOT NULL,
  osm_id BIGINT NOT NULL,
  lat DOUBLE PRECISION NOT NULL,
  lon DOUBLE PRECISION NOT NULL,
  tags JSONB NOT NULL,
  updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS tiles (
  id TEXT NOT NULL,
  min_lat DOUBLE PRECISION NOT NULL,
  max_lat DOUBLE PRECISION NOT NULL,
  min_lon DOUBLE PRECISION NOT NULL,
  max_lon DOUBLE PRECISION NOT NULL,
  filters_hash TEXT NOT NULL,
  fetched_at TIMESTAMPTZ NOT NULL,
  PRIMARY KEY (id, filters_hash)
);

CREATE TABLE IF NOT EXISTS tile_pois (
  tile_id TEXT NOT NULL,
  filters_hash TEXT NOT NULL,
  poi_id TEXT NOT NULL,
  PRIMARY KEY (tile_id, filters_hash, poi_id)
);

CREATE INDEX IF NOT EXISTS idx_tiles_filters ON tiles(filters_hash);
CREATE INDEX IF NOT EXISTS idx_tile_pois_tile ON tile_pois(tile_id, filters_hash);
"""

_UPSERT_POI_PG = """
INSERT INTO pois (id, osm_type, osm_id, lat, lon, tags, updated_at)
VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s)
ON CONFLICT (id) DO UPDATE SET
  lat = EXCLUDED.lat,
  lon = EXCLUDED.lon,
  tags = EXCLUDED.tags,
  updated_at = EXCLUDED.updated_at
"""

_UPSERT_TILE_PG = """
INSERT INTO tiles (id, min_lat, max_lat, min_lon, max_lon, filters_hash, fetched_at)
VALUES (%s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (id, filters_hash) DO UPDATE SET
  fetched_at = EXCLUDED.fetched_at
"""

_LINK_PG = """
INSERT INTO tile_pois (tile_id, filters_hash, poi_id)
VALUES (%s, %s, %s)
ON CONFLICT DO NOTHING
"""

_POI_COLS = "id, osm_type, osm_id, lat, lon, tags"
_TILE_COLS = "id, filters_hash, fetched_at, min_lat, max_lat, min_lon, max_lon"


class PostgresPoiDB(PoiDB):
    """
    Postgres backend over a psycopg2 ThreadedConnectionPool.
    Schema is created on init.
    """

    supports_atomic_save = True

    def __init__(self, database_url: str, min_conn: int = 1, max_conn: int = 5):
        try:
            import psycopg2
            import psycopg2.pool
        except ImportError:
            raise RuntimeError(
                "psycopg2-binary is required for the Postgres POI cache. "
                "Install: pip install 'routeguide[postgres]'"
            )

        self._driver_error = psycopg2.Error
        logger.info("[poi_db] Connecting to Postgres (pool %d-%d)...", min_conn, max_conn)
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(min_conn, max_conn, database_url)
        except psycopg2.Error as e:
            raise PersistenceError(f"postgres_connect_failed err={e!r}") from e

        with self._cursor("schema") as cur:
            cur.execute(PG_SCHEMA_SQL)
        logger.info("[poi_db] Postgres ready")

    @contextmanager
    def _cursor(self, op: str):
        conn = self._pool.getconn()
        try:
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            finally:
                cur.close()
        except self._driver_error as e:
            conn.rollback()
            raise PersistenceError(f"postgres_{op}_failed err={e!r}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    @staticmethod
    def _poi_row(poi: Poi, now: str) -> tuple:
        return (
            poi.key,
            poi.type,
            int(poi.id),
            float(poi.lat),
            float(poi.lon),
            orjson.dumps(poi.tags).decode("utf-8"),
            now,
        )

    @staticmethod
    def _tuple_to_poi(row: tuple) -> Poi:
        return Poi.from_osm(
            osm_type=row[1],
            osm_id=row[2],
            lat=row[3],
            lon=row[4],
            tags=_tags_from_db(row[5]),
        )

    @staticmethod
    def _tuple_to_entry(row: tuple) -> TileCacheEntry:
        return TileCacheEntry(
            tile_id=row[0],
            filters_hash=row[1],
            fetched_at=row[2],
            min_lat=float(row[3]),
            max_lat=float(row[4]),
            min_lon=float(row[5]),
            max_lon=float(row[6]),
        )

    @staticmethod
    def _tile_row(tile: Tile, filters_hash: str, fetched_at: Optional[str]) -> tuple:
        return (
            tile.id,
            float(tile.min_lat),
            float(tile.max_lat),
            float(tile.min_lon),
            float(tile.max_lon),
            filters_hash,
            fetched_at or utc_now_iso(),
        )

    # POIs

    def upsert_poi(self, poi: Poi) -> None:
        with self._cursor("upsert_poi") as cur:
            cur.execute(_UPSERT_POI_PG, self._poi_row(poi, utc_now_iso()))

    def upsert_pois(self, pois: Sequence[Poi]) -> int:
        if not pois:
            return 0
        now = utc_now_iso()
        with self._cursor("upsert_pois") as cur:
            cur.executemany(_UPSERT_POI_PG, [self._poi_row(p, now) for p in pois])
        return len(pois)

    def get_poi_by_id(self, poi_id: str) -> Optional[Poi]:
        with self._cursor("get_poi") as cur:
            cur.execute(f"SELECT {_POI_COLS} FROM pois WHERE id = %s", (poi_id,))
            row = cur.fetchone()
        return self._tuple_to_poi(row) if row else None

    def get_pois_by_ids(self, ids: Sequence[str]) -> List[Poi]:
        if not ids:
            return []
        found: Dict[str, Poi] = {}
        with self._cursor("get_pois") as cur:
            for batch in _chunked(list(ids), ID_BATCH_SIZE):
                cur.execute(f"SELECT {_POI_COLS} FROM pois WHERE id = ANY(%s)", (list(batch),))
                for r in cur.fetchall():
                    found[r[0]] = self._tuple_to_poi(r)
        return [found[i] for i in ids if i in found]

    # Tiles

    def get_tile_by_id(self, tile_id: str, filters_hash: str) -> Optional[TileCacheEntry]:
        with self._cursor("get_tile") as cur:
            cur.execute(
                f"SELECT {_TILE_COLS} FROM tiles WHERE id = %s AND filters_hash = %s",
                (tile_id, filters_hash),
            )
            row = cur.fetchone()
        return self._tuple_to_entry(row) if row else None

    def upsert_tile(self, tile: Tile, filters_hash: str, *, fetched_at: Optional[str] = None) -> None:
        with self._cursor("upsert_tile") as cur:
            cur.execute(_UPSERT_TILE_PG, self._tile_row(tile, filters_hash, fetched_at))

    def get_tiles_by_ids(self, ids: Sequence[str], filters_hash: str) -> List[TileCacheEntry]:
        if not ids:
            return []
        out: List[TileCacheEntry] = []
        with self._cursor("get_tiles") as cur:
            for batch in _chunked(list(ids), ID_BATCH_SIZE):
                cur.execute(
                    f"SELECT {_TILE_COLS} FROM tiles WHERE id = ANY(%s) AND filters_hash = %s",
                    (list(batch), filters_hash),
                )
                out.extend(self._tuple_to_entry(r) for r in cur.fetchall())
        return out

    # Links

    def link_poi_to_tile(self, tile_id: str, poi_id: str, filters_hash: str) -> None:
        with self._cursor("link") as cur:
            cur.execute(_LINK_PG, (tile_id, filters_hash, poi_id))

    def get_pois_for_tile(self, tile_id: str, filters_hash: str) -> List[str]:
        with self._cursor("tile_links") as cur:
            cur.execute(
                "SELECT poi_id FROM tile_pois WHERE tile_id = %s AND filters_hash = %s",
                (tile_id, filters_hash),
            )
            return [r[0] for r in cur.fetchall()]

    def clear_tile_pois(self, tile_id: str, filters_hash: str) -> None:
        with self._cursor("clear_links") as cur:
            cur.execute(
                "DELETE FROM tile_pois WHERE tile_id = %s AND filters_hash = %s",
                (tile_id, filters_hash),
            )

    def get_all_pois_for_tiles(self, tile_ids: Sequence[str], filters_hash: str) -> List[TilePoiLink]:
        if not tile_ids:
            return []
        out: List[TilePoiLink] = []
        with self._cursor("tiles_links") as cur:
            for batch in _chunked(list(tile_ids), ID_BATCH_SIZE):
                cur.execute(
                    "SELECT tile_id, poi_id FROM tile_pois WHERE tile_id = ANY(%s) AND filters_hash = %s",
                    (list(batch), filters_hash),
                )
                out.extend(TilePoiLink(r[0], filters_hash, r[1]) for r in cur.fetchall())
        return out

    def save_tile_with_pois(
        self,
        tile: Tile,
        filters_hash: str,
        pois: Sequence[Poi],
        *,
        fetched_at: Optional[str] = None,
    ) -> None:
        now = utc_now_iso()
        with self._cursor("save_tile") as cur:
            cur.execute(_UPSERT_TILE_PG, self._tile_row(tile, filters_hash, fetched_at))
            cur.execute(
                "DELETE FROM tile_pois WHERE tile_id = %s AND filters_hash = %s",
                (tile.id, filters_hash),
            )
            if pois:
                cur.executemany(_UPSERT_POI_PG, [self._poi_row(p, now) for p in pois])
                cur.executemany(_LINK_PG, [(tile.id, filters_hash, p.key) for p in pois])

    def close(self) -> None:
        try:
            self._pool.closeall()
        except self._driver_error as e:
            raise PersistenceError(f"postgres_close_failed err={e!r}") from e


# ── Factory ──────────────────────────────────────────────────────────

def create_poi_db(
    *,
    database_url: str | None = None,
    sqlite_path: str | None = None,
) -> PoiDB:
    """
    Pick the POI cache backend.

    Priority:
      1. database_url → Postgres (falls back to SQLite if init fails)
      2. sqlite_path  → local SQLite
    """
    if database_url:
        try:
            db = PostgresPoiDB(database_url)
            logger.info("[poi_db] Using Postgres backend")
            return db
        except (RuntimeError, PersistenceError) as e:
            logger.warning("[poi_db] Postgres init failed (%s); falling back to SQLite", e)

    path = sqlite_path or "data/poi_cache.db"
    logger.info("[poi_db] Using SQLite backend: %s", path)
    return SqlitePoiDB(path)
