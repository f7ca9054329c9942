from __future__ import annotations

import asyncio
import logging
import math
import threading
from typing import Any, Dict, List, Optional, Sequence

import httpx

from routeguide.core.categories import IMPORTANT_TYPES, statements_for_categories
from routeguide.core.contracts import Poi
from routeguide.core.errors import PermanentSourceError, TransientSourceError
from routeguide.core.settings import settings
from routeguide.services.shaping import filter_by_distance, sort_by_importance

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 503, 504})

# Upper bound on vertices sent in one around() filter
AROUND_TARGET_POINTS = 80


def sample_route(route: Sequence[Sequence[float]], target: int = AROUND_TARGET_POINTS) -> List[Sequence[float]]:
    """Every ceil(n/target)-th vertex, always keeping the first and last."""
    if not route:
        return []
    step = max(1, math.ceil(len(route) / target))
    sampled = list(route[::step])
    if sampled[0] is not route[0]:
        sampled.insert(0, route[0])
    if sampled[-1] is not route[-1]:
        sampled.append(route[-1])
    return sampled


def build_overpass_ql(
    *,
    bbox: Sequence[float] | None,
    route: Sequence[Sequence[float]] | None,
    categories: Sequence[str],
    max_deviation_km: float | None,
    timeout_s: int = 90,
) -> Optional[str]:
    """
    Overpass QL for the category statements inside either a route corridor
    (around:) or a bbox. None when no category maps to a statement.
    """
    statements = statements_for_categories(list(categories))
    if not statements:
        return None

    if route:
        radius_m = (max_deviation_km * 1000.0) if max_deviation_km else 5000.0
        coords = ",".join(f"{float(p[0])},{float(p[1])}" for p in sample_route(route))
        area = f"(around:{radius_m:.0f},{coords})"
    else:
        if bbox is None:
            raise ValueError("bbox is required when no route is given")
        min_lat, max_lat, min_lon, max_lon = (float(v) for v in bbox)
        # Overpass bbox order is (south, west, north, east)
        area = f"({min_lat},{min_lon},{max_lat},{max_lon})"

    parts = "".join(f"{stmt}{area};" for stmt in statements)
    return f"[out:json][timeout:{int(timeout_s)}];({parts});out center;"


def _element_to_poi(el: Any) -> Optional[Poi]:
    """None for anything that is not a usable node/way/relation."""
    if not isinstance(el, dict):
        return None
    osm_type = el.get("type")
    osm_id = el.get("id")
    if osm_type not in ("node", "way", "relation") or osm_id is None:
        return None

    lat = el.get("lat")
    lon = el.get("lon")
    if lat is None or lon is None:
        center = el.get("center")
        if not isinstance(center, dict):
            return None
        lat = center.get("lat")
        lon = center.get("lon")
    if lat is None or lon is None:
        return None

    tags = el.get("tags")
    try:
        lat_f, lon_f = float(lat), float(lon)
        if not (math.isfinite(lat_f) and math.isfinite(lon_f)):
            return None
        # pydantic's ValidationError is a ValueError
        return Poi.from_osm(
            osm_type=osm_type,
            osm_id=int(osm_id),
            lat=lat_f,
            lon=lon_f,
            tags=tags if isinstance(tags, dict) else {},
        )
    except (TypeError, ValueError):
        logger.warning("[overpass] skipping malformed element %s/%r", osm_type, osm_id)
        return None


class OverpassClient:
    """
    Async Overpass client.

    Endpoints rotate round-robin, one step per attempt whatever the outcome.
    429/503/504 and transport failures are retried with exponential backoff;
    any other HTTP error is raised immediately.
    """

    def __init__(
        self,
        endpoints: Sequence[str] | None = None,
        *,
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
        timeout_s: int | None = None,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        eps = list(endpoints) if endpoints else settings.overpass_endpoint_list()
        if not eps:
            raise ValueError("at least one Overpass endpoint is required")
        self.endpoints = eps
        self.max_retries = max(0, settings.overpass_max_retries if max_retries is None else int(max_retries))
        self.retry_delay_ms = settings.overpass_retry_delay_ms if retry_delay_ms is None else int(retry_delay_ms)
        self.timeout_s = settings.overpass_timeout_s if timeout_s is None else int(timeout_s)
        self.user_agent = user_agent or settings.overpass_user_agent
        self._transport = transport

        self._index = 0
        self._lock = threading.Lock()
        logger.info("[overpass] initialized with %d endpoints", len(self.endpoints))

    def _next_endpoint(self) -> str:
        with self._lock:
            ep = self.endpoints[self._index]
            self._index = (self._index + 1) % len(self.endpoints)
            return ep

    async def _post_once(self, client: httpx.AsyncClient, endpoint: str, ql: str) -> Dict[str, Any]:
        try:
            r = await client.post(endpoint, data={"data": ql})
        except httpx.TransportError as e:
            raise TransientSourceError(f"overpass_transport_error err={e!r}", endpoint=endpoint) from e

        if r.status_code in RETRYABLE_STATUSES:
            raise TransientSourceError(
                f"overpass_http_{r.status_code}", status_code=r.status_code, endpoint=endpoint
            )
        if r.status_code >= 400:
            raise PermanentSourceError(
                f"overpass_http_{r.status_code} body={r.text[:200]!r}",
                status_code=r.status_code,
                endpoint=endpoint,
            )
        try:
            body = r.json()
        except ValueError as e:
            raise PermanentSourceError(
                "overpass_invalid_json", status_code=r.status_code, endpoint=endpoint
            ) from e
        if not isinstance(body, dict):
            raise PermanentSourceError(
                f"overpass_invalid_body type={type(body).__name__}",
                status_code=r.status_code,
                endpoint=endpoint,
            )
        return body

    async def _fetch_with_retries(self, ql: str) -> Dict[str, Any]:
        timeout = httpx.Timeout(float(self.timeout_s) + 10.0, connect=15.0)
        headers = {"User-Agent": self.user_agent}
        tried: List[str] = []
        attempts = self.max_retries + 1

        async with httpx.AsyncClient(timeout=timeout, headers=headers, transport=self._transport) as client:
            attempt = 0
            while True:
                endpoint = self._next_endpoint()
                tried.append(endpoint)
                logger.info(
                    "[overpass] attempt %d/%d using %s", attempt + 1, attempts, endpoint
                )
                try:
                    return await self._post_once(client, endpoint, ql)
                except TransientSourceError as e:
                    if attempt >= self.max_retries:
                        logger.error("[overpass] all attempts failed; tried %s", ", ".join(tried))
                        raise
                    delay_ms = self.retry_delay_ms * (2 ** attempt)
                    logger.warning(
                        "[overpass] %s (status=%s), retrying in %dms on next endpoint",
                        e, e.status_code, delay_ms,
                    )
                    await asyncio.sleep(delay_ms / 1000.0)
                attempt += 1

    async def fetch_pois(
        self,
        bbox: Sequence[float] | None,
        route: Sequence[Sequence[float]] | None,
        categories: Sequence[str],
        max_deviation_km: float | None,
        limit: int | None,
    ) -> List[Poi]:
        ql = build_overpass_ql(
            bbox=bbox,
            route=route,
            categories=categories,
            max_deviation_km=max_deviation_km,
            timeout_s=self.timeout_s,
        )
        if ql is None:
            return []

        data = await self._fetch_with_retries(ql)
        elements = data.get("elements") or []
        if not isinstance(elements, list):
            raise PermanentSourceError("overpass_invalid_body elements is not a list")

        pois: List[Poi] = []
        for el in elements:
            poi = _element_to_poi(el)
            if poi is not None and poi.hasName:
                pois.append(poi)

        if route and max_deviation_km:
            pois = filter_by_distance(pois, route, max_deviation_km)

        pois = sort_by_importance(pois, important=IMPORTANT_TYPES)
        if limit is not None and limit > 0:
            pois = pois[:limit]

        logger.info("[overpass] %d POIs after post-processing", len(pois))
        return pois
