from typing import Any, Dict, List, Optional

import pytest
import requests

from poiscan import http as http_module
from poiscan.config import DiscoveryConfig
from poiscan.gateway import (
    GatewayError,
    OverpassProxyGateway,
    build_overpass_query,
    parse_overpass_response,
)
from poiscan.http import HttpClient, RequestMetrics
from poiscan.models import Point


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.url = "http://proxy.test/overpass"
        self.content = b"" if payload is None else b"{...}"

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class FakeHttp:
    def __init__(self, routes: Dict[tuple, Any]):
        self.routes = routes
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, path, params=None, data=None, json_body=None, headers=None, retry_max=None):
        self.calls.append(
            {"method": method, "path": path, "params": params, "data": data, "json": json_body, "headers": headers}
        )
        result = self.routes[(method, path)]
        if isinstance(result, Exception):
            raise result
        return result


OVERPASS_PAYLOAD = {
    "elements": [
        {
            "type": "node",
            "id": 1,
            "lat": 42.36,
            "lon": -71.06,
            "tags": {
                "name": "Cafe One",
                "amenity": "cafe",
                "addr:housenumber": "12",
                "addr:street": "Main St",
                "addr:city": "Boston",
                "phone": "555-0100",
                "opening_hours": "Mo-Fr 07:00-17:00",
            },
        },
        {"type": "node", "id": 2, "lat": 42.361, "lon": -71.061, "tags": {"amenity": "bench"}},
        {"type": "node", "id": 3, "lat": 42.362, "lon": -71.062},
        {
            "type": "way",
            "id": 40,
            "center": {"lat": 42.37, "lon": -71.07},
            "tags": {"name": "Old Hall", "historic": "building", "website": "https://hall.example"},
        },
        {"type": "way", "id": 41, "center": {"lat": 42.38, "lon": -71.08}, "tags": {"name": "Thing"}},
    ]
}


def test_build_query_has_node_and_way_clause_per_tag():
    query = build_overpass_query(Point(42.36, -71.06), ["amenity", "shop=bakery"], 1500)

    assert 'node["amenity"](around:1500,42.36,-71.06);' in query
    assert 'way["amenity"](around:1500,42.36,-71.06);' in query
    assert 'node["shop"="bakery"](around:1500,42.36,-71.06);' in query
    assert 'way["shop"="bakery"](around:1500,42.36,-71.06);' in query
    assert query.startswith("[out:json]")
    assert query.endswith("out center 200;")


def test_build_query_defaults_to_all_categories():
    cfg = DiscoveryConfig()
    query = build_overpass_query(Point(1.0, 2.0), [], 3000, cfg)
    for tag in cfg.default_tag_filters:
        assert f'node["{tag}"]' in query
    assert query.count("(around:3000,1.0,2.0)") == 2 * len(cfg.default_tag_filters)


def test_parse_counts_raw_before_dropping_unnamed():
    pois, raw_count = parse_overpass_response(OVERPASS_PAYLOAD)

    assert raw_count == 5
    assert [p.poi_id for p in pois] == ["node/1", "way/40", "way/41"]
    cafe, hall, thing = pois
    assert cafe.category == "cafe"
    assert cafe.address == "12, Main St, Boston"
    assert cafe.phone == "555-0100"
    assert cafe.opening_hours == "Mo-Fr 07:00-17:00"
    assert (hall.lat, hall.lon) == (42.37, -71.07)
    assert hall.category == "building"
    assert hall.website == "https://hall.example"
    assert thing.category == "place"
    assert thing.address is None


def test_parse_rejects_payload_without_elements():
    with pytest.raises(GatewayError):
        parse_overpass_response({"remark": "runtime error"})


def test_search_with_explicit_radius_skips_hint():
    http = FakeHttp({("POST", "/overpass"): FakeResponse(payload=OVERPASS_PAYLOAD, headers={"X-Cache": "HIT"})})
    metrics = RequestMetrics()
    gateway = OverpassProxyGateway(http, DiscoveryConfig(), metrics)

    outcome = gateway.search(Point(42.36, -71.06), 1500, ["amenity"])

    assert len(http.calls) == 1
    assert "(around:1500," in http.calls[0]["data"]["data"]
    assert outcome.radius_used_m == 1500
    assert outcome.raw_count == 5
    assert outcome.cache_hit is True
    assert metrics.as_dict()["network_searches"] == 1
    assert metrics.as_dict()["cache_hits"] == 1


def test_search_without_radius_asks_proxy_and_clamps():
    http = FakeHttp(
        {
            ("GET", "/radius-hint"): FakeResponse(payload={"radius": 100}),
            ("POST", "/overpass"): FakeResponse(payload={"elements": []}),
        }
    )
    gateway = OverpassProxyGateway(http, DiscoveryConfig())

    outcome = gateway.search(Point(42.36, -71.06), None, [])

    assert http.calls[0]["method"] == "GET"
    assert http.calls[0]["params"] == {"lat": 42.36, "lon": -71.06}
    assert outcome.radius_used_m == 250
    assert outcome.cache_hit is False


def test_hint_failure_falls_back_to_default_radius():
    http = FakeHttp(
        {
            ("GET", "/radius-hint"): requests.ConnectionError("down"),
            ("POST", "/overpass"): FakeResponse(payload={"elements": []}),
        }
    )
    gateway = OverpassProxyGateway(http, DiscoveryConfig())

    assert gateway.search(Point(0.0, 0.0), None, []).radius_used_m == 3000


def test_non_json_response_raises_gateway_error():
    http = FakeHttp({("POST", "/overpass"): FakeResponse(payload=ValueError("html"))})
    gateway = OverpassProxyGateway(http, DiscoveryConfig())

    with pytest.raises(GatewayError):
        gateway.search(Point(0.0, 0.0), 1000, [])


def test_feedback_posts_body_and_returns_radius():
    http = FakeHttp({("POST", "/radius-hint"): FakeResponse(payload={"radius": 1800})})
    gateway = OverpassProxyGateway(http, DiscoveryConfig())

    assert gateway.feedback(Point(1.5, 2.5), 12, True) == 1800
    assert http.calls[0]["json"] == {"lat": 1.5, "lon": 2.5, "resultCount": 12, "error": False, "capped": True}


def test_feedback_failures_are_swallowed():
    http = FakeHttp({("POST", "/radius-hint"): requests.Timeout("slow")})
    metrics = RequestMetrics()
    gateway = OverpassProxyGateway(http, DiscoveryConfig(), metrics)

    assert gateway.feedback(Point(1.0, 1.0), 0, False, error=True) is None
    assert metrics.as_dict()["feedback_failures"] == 1


def test_cache_only_no_content_is_empty_not_error():
    http = FakeHttp({("POST", "/overpass"): FakeResponse(status_code=204)})
    gateway = OverpassProxyGateway(http, DiscoveryConfig())

    assert gateway.search_cache_only(Point(1.0, 1.0), 2000, ["shop"]) is None
    assert http.calls[0]["headers"] == {"X-Cache-Only": "true"}


def test_cache_only_returns_cached_outcome():
    http = FakeHttp({("POST", "/overpass"): FakeResponse(payload=OVERPASS_PAYLOAD)})
    gateway = OverpassProxyGateway(http, DiscoveryConfig())

    outcome = gateway.search_cache_only(Point(42.36, -71.06), 2000, [])

    assert outcome is not None
    assert outcome.cache_hit is True
    assert len(outcome.pois) == 3


def _response(status: int, body: bytes = b"{}", headers: Optional[Dict[str, str]] = None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = body
    resp.url = "http://proxy.test/overpass"
    resp.headers.update(headers or {})
    return resp


def test_http_client_retries_retryable_status(monkeypatch):
    monkeypatch.setattr(http_module.time, "sleep", lambda _s: None)
    client = HttpClient("http://proxy.test/", retry_max=3)
    responses = [_response(503), _response(429, headers={"Retry-After": "1"}), _response(200, b'{"ok": true}')]
    calls = []

    def fake_request(method, url, **kwargs):
        calls.append(url)
        return responses.pop(0)

    monkeypatch.setattr(client.session, "request", fake_request)

    resp = client.request("GET", "/radius-hint")

    assert resp.json() == {"ok": True}
    assert calls == ["http://proxy.test/radius-hint"] * 3


def test_http_client_raises_on_client_error(monkeypatch):
    monkeypatch.setattr(http_module.time, "sleep", lambda _s: None)
    client = HttpClient("http://proxy.test", retry_max=3)
    calls = []

    def fake_request(method, url, **kwargs):
        calls.append(url)
        return _response(404)

    monkeypatch.setattr(client.session, "request", fake_request)

    with pytest.raises(requests.HTTPError):
        client.request("POST", "/overpass")
    assert len(calls) == 1


def test_request_metrics_reject_unknown_kind():
    with pytest.raises(ValueError):
        RequestMetrics().inc("bogus")
