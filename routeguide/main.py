# routeguide/main.py
from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.middleware.gzip import GZipMiddleware

# Load <repo>/.env (main.py is <repo>/routeguide/main.py)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

from routeguide.core.settings import settings
from routeguide.core.errors import PersistenceError
from routeguide.core.poi_db import create_poi_db
from routeguide.api import api_router
from routeguide.api import pois as pois_api

from routeguide.services.curation import CurationService
from routeguide.services.overpass import OverpassClient
from routeguide.services.pois import PoiQueryService

logger = logging.getLogger(__name__)

app = FastAPI(title="RouteGuide POI Backend", version="1.0.0")

app.add_middleware(GZipMiddleware, minimum_size=1000)

# ──────────────────────────────────────────────────────────────
# POI cache DB: Postgres when DATABASE_URL is set, else local SQLite
# ──────────────────────────────────────────────────────────────

_poi_db = create_poi_db(
    database_url=settings.database_url,
    sqlite_path=settings.cache_db_path,
)

_overpass = OverpassClient()
_curator = CurationService()

_poi_query_service = PoiQueryService(_poi_db, _overpass, curator=_curator)

# ──────────────────────────────────────────────────────────────
# Dependency overrides
# ──────────────────────────────────────────────────────────────

def provide_poi_query_service() -> PoiQueryService:
    return _poi_query_service


app.dependency_overrides[pois_api.get_poi_query_service] = provide_poi_query_service

app.include_router(api_router)

# ──────────────────────────────────────────────────────────────
# Shutdown
# ──────────────────────────────────────────────────────────────

@app.on_event("shutdown")
def shutdown():
    logger.info("[app] Shutting down, closing POI cache")
    try:
        _poi_db.close()
    except PersistenceError as e:
        logger.warning("[app] Error closing POI cache: %s", e)
