from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx
import orjson

from routeguide.core.contracts import Poi
from routeguide.core.settings import settings

logger = logging.getLogger(__name__)


_SYSTEM_PROMPT = (
    "You are a tourism expert. You receive Points of Interest from OpenStreetMap. "
    "Select the most interesting places for a traveller. Ignore generic shops, banks "
    "and administrative buildings unless they are famous landmarks. Prefer unique, "
    "historic or visually striking places. For each pick, write 1-2 sentences on why "
    "it is worth visiting, using concrete details from the data where available. "
    "Use the ids exactly as given."
)


def _response_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "picks": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "id": {"type": "string"},
                        "name": {"type": "string"},
                        "description": {"type": "string"},
                    },
                    "required": ["id", "name", "description"],
                },
            },
        },
        "required": ["picks"],
    }


def _simplify(poi: Poi) -> Dict[str, Any]:
    tags = poi.tags
    return {
        "id": poi.key,
        "name": poi.name,
        "tags": {
            k: tags[k]
            for k in ("tourism", "historic", "amenity", "description")
            if k in tags
        },
        "lat": poi.lat,
        "lon": poi.lon,
    }


def _output_text(data: Dict[str, Any]) -> Optional[str]:
    for item in data.get("output", []) or []:
        if item.get("type") != "message":
            continue
        for c in item.get("content", []) or []:
            if c.get("type") == "output_text" and c.get("text"):
                return c.get("text")
    return None


def merge_picks(pois: Sequence[Poi], picks: Sequence[Dict[str, Any]]) -> List[Poi]:
    """
    Map model picks back onto the original POIs, in the model's order.
    Unknown ids are dropped; the first match per id wins.
    """
    by_id: Dict[str, Poi] = {}
    for p in pois:
        by_id.setdefault(p.key, p)

    out: List[Poi] = []
    used = set()
    for pick in picks:
        pid = str(pick.get("id", "")).strip()
        src = by_id.get(pid)
        if src is None or pid in used:
            continue
        used.add(pid)
        desc = pick.get("description")
        out.append(
            src.model_copy(
                update={
                    "description": str(desc) if desc else None,
                    "isTopPick": True,
                }
            )
        )
    return out


class CurationService:
    """
    Optional LLM pass over an already shaped POI list (OpenAI Responses API).

    curate() returns None when curation is unavailable: no API key, HTTP
    failure, or output that does not parse. Callers fall back to the
    deterministic shaping in that case.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout_s: float | None = None,
        max_candidates: int | None = None,
        top_n: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = settings.openai_api_key if api_key is None else api_key
        self._model = model or settings.openai_model
        self._base = (base_url or settings.openai_base_url).rstrip("/")
        self._timeout = float(timeout_s or settings.curation_timeout_s)
        self._max_candidates = int(max_candidates or settings.curation_max_candidates)
        self._top_n = int(top_n or settings.curation_top_n)
        self._transport = transport

    @property
    def available(self) -> bool:
        return bool(self._api_key)

    def _build_body(self, candidates: List[Dict[str, Any]]) -> Dict[str, Any]:
        user_msg = (
            f"Select the top {self._top_n} places.\n\nData:\n"
            + orjson.dumps(candidates).decode("utf-8")
        )
        return {
            "model": self._model,
            "input": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": user_msg},
            ],
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": "PoiCuration",
                    "strict": True,
                    "schema": _response_schema(),
                }
            },
        }

    async def curate(
        self, pois: Sequence[Poi], route: Optional[Sequence[Sequence[float]]] = None
    ) -> Optional[List[Poi]]:
        # route is accepted but not sent to the model
        if not self.available:
            logger.warning("[curation] OPENAI_API_KEY missing; skipping curation")
            return None
        if not pois:
            return []

        candidates = [_simplify(p) for p in list(pois)[: self._max_candidates]]
        url = f"{self._base}/responses"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                r = await client.post(url, headers=headers, json=self._build_body(candidates))
        except httpx.HTTPError as e:
            logger.error("[curation] request failed: %r", e)
            return None

        if r.status_code >= 400:
            logger.error("[curation] OpenAI /responses %s: %s", r.status_code, r.text[:400])
            return None

        try:
            text = _output_text(r.json())
            if not text:
                logger.error("[curation] missing output_text")
                return None
            raw = orjson.loads(text)
        except ValueError as e:
            logger.error("[curation] invalid JSON: %s", e)
            return None

        picks = raw.get("picks") if isinstance(raw, dict) else raw
        if not isinstance(picks, list):
            logger.error("[curation] unexpected output shape: %s", type(raw).__name__)
            return None

        merged = merge_picks(pois, [p for p in picks if isinstance(p, dict)])
        if not merged:
            logger.warning("[curation] no picks matched the candidates")
            return None
        logger.info("[curation] %d picks from %d candidates", len(merged), len(candidates))
        return merged
