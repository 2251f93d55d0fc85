"""Query gateway: the narrow contract to the remote spatial query service.

OverpassProxyGateway talks to the caching Overpass proxy, which executes the
geographic query and keeps its own per-cell radius model. The proxy adapts
that model from the feedback we post after each search.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import requests

from . import config
from .config import DiscoveryConfig
from .http import HttpClient, RequestMetrics
from .models import Point, Poi, SearchOutcome

logger = logging.getLogger(__name__)


class GatewayError(RuntimeError):
    pass


class QueryGateway(Protocol):
    def search(self, center: Point, radius_m: Optional[int], tag_filter: Sequence[str]) -> SearchOutcome:
        ...

    def feedback(
        self,
        center: Point,
        result_count: int,
        was_truncated: bool,
        error: bool = False,
    ) -> Optional[int]:
        ...

    def search_cache_only(
        self, center: Point, radius_m: int, tag_filter: Sequence[str]
    ) -> Optional[SearchOutcome]:
        ...


class OverpassProxyGateway:
    def __init__(
        self,
        http_client: HttpClient,
        discovery_config: Optional[DiscoveryConfig] = None,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.http = http_client
        self.config = discovery_config or DiscoveryConfig()
        self.metrics = metrics

    def _inc(self, kind: str) -> None:
        if self.metrics is not None:
            self.metrics.inc(kind)

    def radius_hint(self, center: Point) -> int:
        """The proxy's recommended radius for this cell, or the default on any failure."""
        self._inc("hint_requests")
        try:
            resp = self.http.request(
                "GET",
                config.RADIUS_HINT_PATH,
                params={"lat": center.lat, "lon": center.lon},
                retry_max=1,
            )
            return int(resp.json()["radius"])
        except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
            logger.warning("Radius hint fetch failed (%s), using default", exc)
            return self.config.default_radius_m

    def search(self, center: Point, radius_m: Optional[int], tag_filter: Sequence[str]) -> SearchOutcome:
        radius = radius_m if radius_m is not None else self.radius_hint(center)
        radius = self.config.clamp_radius(radius)
        query = build_overpass_query(center, tag_filter, radius, self.config)
        logger.debug("Overpass query at %.5f,%.5f radius=%sm (%s chars)", center.lat, center.lon, radius, len(query))

        self._inc("network_searches")
        resp = self.http.request("POST", config.OVERPASS_PATH, data={"data": query})
        payload = _json_payload(resp)
        pois, raw_count = parse_overpass_response(payload)
        cache_hit = (resp.headers.get(config.CACHE_STATUS_HEADER) or "MISS").upper() == "HIT"
        if cache_hit:
            self._inc("cache_hits")
        return SearchOutcome(pois=pois, raw_count=raw_count, radius_used_m=radius, cache_hit=cache_hit)

    def feedback(
        self,
        center: Point,
        result_count: int,
        was_truncated: bool,
        error: bool = False,
    ) -> Optional[int]:
        """Best-effort radius feedback. Returns the proxy's updated radius, never raises."""
        body = {
            "lat": center.lat,
            "lon": center.lon,
            "resultCount": int(result_count),
            "error": bool(error),
            "capped": bool(was_truncated),
        }
        self._inc("feedback_posts")
        try:
            resp = self.http.request("POST", config.RADIUS_HINT_PATH, json_body=body, retry_max=1)
            return int(resp.json()["radius"])
        except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
            self._inc("feedback_failures")
            logger.debug("Radius feedback dropped: %s", exc)
            return None

    def search_cache_only(
        self, center: Point, radius_m: int, tag_filter: Sequence[str]
    ) -> Optional[SearchOutcome]:
        radius = self.config.clamp_radius(radius_m)
        query = build_overpass_query(center, tag_filter, radius, self.config)
        try:
            resp = self.http.request(
                "POST",
                config.OVERPASS_PATH,
                data={"data": query},
                headers={config.CACHE_ONLY_HEADER: "true"},
                retry_max=1,
            )
        except requests.HTTPError as exc:
            logger.debug("Cache-only lookup returned an error status: %s", exc)
            self._inc("cache_only_misses")
            return None
        if resp.status_code == 204 or not resp.content:
            self._inc("cache_only_misses")
            return None
        pois, raw_count = parse_overpass_response(_json_payload(resp))
        self._inc("cache_only_hits")
        return SearchOutcome(pois=pois, raw_count=raw_count, radius_used_m=radius, cache_hit=True)


def _json_payload(resp: requests.Response) -> Dict[str, Any]:
    try:
        payload = resp.json()
    except ValueError as exc:
        raise GatewayError(f"Non-JSON response from {resp.url}") from exc
    if not isinstance(payload, dict):
        raise GatewayError("Unexpected response shape: expected an object")
    return payload


def normalize_tags(tag_filter: Optional[Sequence[str]]) -> Tuple[str, ...]:
    if not tag_filter:
        return ()
    return tuple(t.strip() for t in tag_filter if t and t.strip())


def tag_clause(tag: str) -> str:
    if "=" in tag:
        key, value = tag.split("=", 1)
        return f'["{key.strip()}"="{value.strip()}"]'
    return f'["{tag.strip()}"]'


def build_overpass_query(
    center: Point,
    tag_filter: Sequence[str],
    radius_m: int,
    discovery_config: Optional[DiscoveryConfig] = None,
) -> str:
    cfg = discovery_config or DiscoveryConfig()
    tags = list(normalize_tags(tag_filter)) or list(cfg.default_tag_filters)
    around = f"(around:{int(radius_m)},{center.lat},{center.lon})"
    lines = [f"[out:json][timeout:{config.OVERPASS_TIMEOUT_SECONDS}];", "("]
    for tag in tags:
        clause = tag_clause(tag)
        lines.append(f"  node{clause}{around};")
        lines.append(f"  way{clause}{around};")
    lines.append(");")
    lines.append(f"out center {cfg.cap_limit};")
    return "\n".join(lines)


# Adapter/mapper for Overpass element fields

def parse_overpass_response(payload: Dict[str, Any]) -> Tuple[List[Poi], int]:
    """Parsed POIs plus the raw element count before unnamed elements are dropped."""
    elements = payload.get("elements")
    if elements is None:
        raise GatewayError("Overpass response has no elements")
    raw_count = len(elements)
    parsed: List[Poi] = []
    for el in elements:
        tags = el.get("tags")
        if not tags:
            continue
        name = tags.get("name")
        if not name:
            continue
        center = el.get("center") or {}
        lat = el.get("lat", center.get("lat"))
        lon = el.get("lon", center.get("lon"))
        if lat is None or lon is None or el.get("id") is None:
            continue
        el_type = el.get("type")
        poi_id = f"{el_type}/{el['id']}" if el_type else str(el["id"])
        parsed.append(
            Poi(
                poi_id=poi_id,
                name=name,
                lat=float(lat),
                lon=float(lon),
                category=category_for(tags),
                address=build_address(tags),
                phone=tags.get("phone"),
                website=tags.get("website"),
                opening_hours=tags.get("opening_hours"),
            )
        )
    return parsed, raw_count


def category_for(tags: Dict[str, Any]) -> str:
    for key in config.CATEGORY_TAG_PRIORITY:
        value = tags.get(key)
        if value:
            return value
    return "place"


def build_address(tags: Dict[str, Any]) -> Optional[str]:
    parts = [
        tags.get(key)
        for key in ("addr:housenumber", "addr:street", "addr:city", "addr:state")
        if tags.get(key)
    ]
    return ", ".join(parts) if parts else None
