import asyncio

import httpx
import orjson

from routeguide.services.curation import CurationService

from conftest import make_poi

POIS = [
    make_poi(1, 52.52, 13.40, name="Altes Museum", tourism="museum"),
    make_poi(2, 52.51, 13.39, name="Schloss", historic="castle", osm_type="way"),
    make_poi(3, 52.50, 13.38, name="Gift shop", shop="gift"),
]


def _responses_payload(picks) -> dict:
    return {
        "output": [
            {"type": "reasoning", "content": []},
            {
                "type": "message",
                "content": [{"type": "output_text", "text": orjson.dumps({"picks": picks}).decode()}],
            },
        ]
    }


def _service(handler, api_key="sk-test"):
    return CurationService(
        api_key=api_key,
        model="test-model",
        base_url="https://llm.test/v1",
        transport=httpx.MockTransport(handler),
    )


def test_picks_are_merged_in_model_order():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = orjson.loads(request.content)
        return httpx.Response(200, json=_responses_payload([
            {"id": "way/2", "name": "Schloss", "description": "Baroque palace."},
            {"id": "node/1", "name": "Altes Museum", "description": "Antiquities."},
            {"id": "node/999", "name": "Invented", "description": "Not a candidate."},
        ]))

    out = asyncio.run(_service(handler).curate(POIS))

    assert [p.key for p in out] == ["way/2", "node/1"]
    assert all(p.isTopPick for p in out)
    assert out[0].description == "Baroque palace."
    assert seen["url"] == "https://llm.test/v1/responses"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "test-model"


def test_route_argument_is_accepted():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_responses_payload([
            {"id": "node/1", "name": "Altes Museum", "description": "Antiquities."},
        ]))

    out = asyncio.run(_service(handler).curate(POIS, [[52.52, 13.40], [52.40, 13.05]]))
    assert [p.key for p in out] == ["node/1"]


def test_missing_key_is_unavailable():
    def handler(request):
        raise AssertionError("no request expected")

    assert asyncio.run(_service(handler, api_key="").curate(POIS)) is None


def test_http_error_is_unavailable():
    assert asyncio.run(_service(lambda r: httpx.Response(500, text="boom")).curate(POIS)) is None


def test_garbage_output_is_unavailable():
    payload = {"output": [{"type": "message", "content": [{"type": "output_text", "text": "not json"}]}]}
    assert asyncio.run(_service(lambda r: httpx.Response(200, json=payload)).curate(POIS)) is None


def test_no_matching_picks_is_unavailable():
    payload = _responses_payload([{"id": "node/404", "name": "x", "description": "y"}])
    assert asyncio.run(_service(lambda r: httpx.Response(200, json=payload)).curate(POIS)) is None
