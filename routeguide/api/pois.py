from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from routeguide.core.contracts import PoisRequest, PoisResponse, PreloadRequest, PreloadResponse
from routeguide.core.errors import (
    InvalidRequestError,
    PersistenceError,
    SourceError,
    bad_request,
    server_error,
    service_unavailable,
)
from routeguide.services.pois import PoiQueryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pois")


def get_poi_query_service() -> PoiQueryService:
    raise RuntimeError("PoiQueryService must be provided by app dependency override")


# ──────────────────────────────────────────────────────────────
# /pois
# ──────────────────────────────────────────────────────────────

@router.post("", response_model=PoisResponse)
async def pois_query(
    req: PoisRequest,
    svc: PoiQueryService = Depends(get_poi_query_service),
) -> PoisResponse:
    try:
        return await svc.query(req)
    except InvalidRequestError as e:
        bad_request("invalid_request", str(e))
    except SourceError as e:
        logger.error("pois_query source failure: %s", e)
        service_unavailable("poi_source_unavailable", str(e))
    except PersistenceError as e:
        logger.exception("pois_query persistence failure")
        server_error("poi_cache_failure", str(e))


# ──────────────────────────────────────────────────────────────
# /pois/preload
# ──────────────────────────────────────────────────────────────

@router.post("/preload", response_model=PreloadResponse)
async def pois_preload(
    req: PreloadRequest,
    svc: PoiQueryService = Depends(get_poi_query_service),
) -> PreloadResponse:
    try:
        return await svc.preload_bbox(req.bbox, req.categories)
    except InvalidRequestError as e:
        bad_request("invalid_request", str(e))
    except PersistenceError as e:
        logger.exception("pois_preload persistence failure")
        server_error("poi_cache_failure", str(e))
