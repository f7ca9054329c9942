from __future__ import annotations

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_DEFAULT_OVERPASS_ENDPOINTS = ",".join(
    [
        "https://overpass-api.de/api/interpreter",
        "https://overpass.private.coffee/api/interpreter",
        "https://maps.mail.ru/osm/tools/overpass/api/interpreter",
    ]
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Persistence: Postgres takes priority over the SQLite path
    cache_db_path: str = Field(default="data/poi_cache.db", alias="POI_CACHE_DB_PATH")
    database_url: str | None = Field(default=None, alias="DATABASE_URL")

    # Tile grid + cache
    tile_size_deg: float = Field(default=0.25, alias="TILE_SIZE_DEG")
    poi_cache_ttl_days: float = Field(default=7, alias="POI_CACHE_TTL_DAYS")

    # Result shaping
    max_pois: int = Field(default=1000, alias="MAX_POIS")
    default_limit: int = Field(default=50, alias="POI_DEFAULT_LIMIT")

    # Tile fetch batching (batch size matches the endpoint pool)
    tile_batch_size: int = Field(default=3, alias="TILE_BATCH_SIZE")
    overpass_request_delay_ms: int = Field(default=500, alias="OVERPASS_REQUEST_DELAY_MS")
    preload_max_tiles: int = Field(default=400, alias="PRELOAD_MAX_TILES")

    # Overpass
    overpass_endpoints: str = Field(default=_DEFAULT_OVERPASS_ENDPOINTS, alias="OVERPASS_ENDPOINTS")
    overpass_max_retries: int = Field(default=3, alias="OVERPASS_MAX_RETRIES")
    overpass_retry_delay_ms: int = Field(default=2000, alias="OVERPASS_RETRY_DELAY_MS")
    overpass_timeout_s: int = Field(default=90, alias="OVERPASS_TIMEOUT_S")
    overpass_tile_limit: int = Field(default=1000, alias="OVERPASS_TILE_LIMIT")
    overpass_user_agent: str = Field(default="RouteGuide/1.0", alias="OVERPASS_USER_AGENT")

    # ──────────────────────────────────────────────────────────────
    # Curation (LLM)
    # ──────────────────────────────────────────────────────────────
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    curation_timeout_s: float = Field(default=25.0, alias="CURATION_TIMEOUT_S")
    curation_max_candidates: int = Field(default=50, alias="CURATION_MAX_CANDIDATES")
    curation_top_n: int = Field(default=10, alias="CURATION_TOP_N")

    def overpass_endpoint_list(self) -> List[str]:
        return [e.strip() for e in self.overpass_endpoints.split(",") if e.strip()]


settings = Settings()
