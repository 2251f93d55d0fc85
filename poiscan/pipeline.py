"""Pipeline orchestration: wires the components and runs one CLI mode end to end."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from . import config
from .cache import PoiStore
from .config import DiscoveryConfig
from .gateway import OverpassProxyGateway, QueryGateway
from .geo import haversine_km, meters_to_lat_deg, meters_to_lon_deg
from .http import HttpClient, RequestMetrics
from .models import Point, Poi
from .pacing import Clock
from .radius_cache import RadiusHintCache
from .reporting import (
    ProgressReporter,
    ensure_dir,
    render_scan_summary,
    render_search_summary,
    write_json_object,
    write_pois_csv,
    write_pois_json,
    write_summary,
)
from .scanner import CoverageScanner
from .service import PoiSearchService
from .subdivision import SubdivisionEngine

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    pois: List[Dict[str, Any]]
    summary: Dict[str, Any]


@dataclass
class Components:
    config: DiscoveryConfig
    metrics: RequestMetrics
    gateway: QueryGateway
    store: PoiStore
    radius_cache: RadiusHintCache
    service: PoiSearchService
    engine: SubdivisionEngine
    scanner: CoverageScanner

    def close(self) -> None:
        self.engine.detach()
        persist_radius_hints(self.store, self.radius_cache)
        self.store.close()


def build_components(
    store_path: str = config.STORE_DB_PATH,
    proxy_url: Optional[str] = None,
    discovery_config: Optional[DiscoveryConfig] = None,
    gateway: Optional[QueryGateway] = None,
    clock: Optional[Clock] = None,
    subdivide: bool = True,
) -> Components:
    cfg = discovery_config or config.current_config()
    metrics = RequestMetrics()
    if gateway is None:
        http_client = HttpClient(
            proxy_url or config.PROXY_BASE_URL,
            timeout=config.HTTP_TIMEOUT_SECONDS,
            retry_max=config.HTTP_RETRY_MAX,
            backoff_base=config.HTTP_BACKOFF_BASE,
            backoff_max=config.HTTP_BACKOFF_MAX,
            user_agent=config.USER_AGENT,
        )
        gateway = OverpassProxyGateway(http_client, cfg, metrics)

    store = PoiStore(store_path)
    radius_cache = RadiusHintCache(cfg)
    warmed = radius_cache.load(store.load_radius_hints())
    if warmed:
        logger.info("Loaded %s radius hints from %s", warmed, store_path)

    service = PoiSearchService(gateway, radius_cache, store, cfg)
    query_lane = threading.Lock()
    engine = SubdivisionEngine(service, cfg, clock=clock, query_lane=query_lane)
    if subdivide:
        engine.attach()
    scanner = CoverageScanner(service, cfg, clock=clock, query_lane=query_lane, subdivide=subdivide)
    return Components(
        config=cfg,
        metrics=metrics,
        gateway=gateway,
        store=store,
        radius_cache=radius_cache,
        service=service,
        engine=engine,
        scanner=scanner,
    )


def persist_radius_hints(store: PoiStore, radius_cache: RadiusHintCache) -> int:
    entries = radius_cache.items()
    if not entries:
        return 0
    saved = store.save_radius_hints(entries)
    logger.info("Persisted %s radius hints", saved)
    return saved


def compute_distance_km_to_center(poi: Poi, center: Point) -> float:
    return haversine_km(poi.lat, poi.lon, center.lat, center.lon)


def poi_rows(pois: Sequence[Poi], center: Optional[Point] = None) -> List[Dict[str, Any]]:
    rows = []
    for poi in pois:
        row = poi.as_dict()
        row["distance_km_to_center"] = (
            round(compute_distance_km_to_center(poi, center), 3) if center is not None else None
        )
        rows.append(row)
    if center is not None:
        rows.sort(key=lambda r: (r["distance_km_to_center"], r["poi_id"]))
    return rows


def circle_bbox(center: Point, radius_m: float) -> Dict[str, float]:
    d_lat = meters_to_lat_deg(radius_m)
    d_lon = meters_to_lon_deg(radius_m, center.lat)
    return {
        "south": center.lat - d_lat,
        "west": center.lon - d_lon,
        "north": center.lat + d_lat,
        "east": center.lon + d_lon,
    }


def _write_outputs(output_dir: str, prefix: str, rows: List[Dict[str, Any]], summary: Dict[str, Any], lines: List[str]) -> None:
    ensure_dir(output_dir)
    write_pois_csv(f"{output_dir}/{prefix}_pois.csv", rows)
    write_pois_json(f"{output_dir}/{prefix}_pois.json", rows)
    write_json_object(f"{output_dir}/{prefix}_summary.json", summary)
    write_summary(f"{output_dir}/{prefix}_summary.txt", lines)


def run_search(
    components: Components,
    center: Point,
    tags: Optional[Sequence[str]] = None,
    radius_m: Optional[int] = None,
    output_dir: str = config.OUTPUT_DIR,
    write_outputs: bool = True,
) -> PipelineResult:
    """One ad-hoc search; any triggered subdivisions are drained before returning."""
    outcome = components.service.search(center, tags, radius_m=radius_m)
    components.engine.drain()

    box = circle_bbox(center, outcome.radius_used_m)
    in_area = [
        poi
        for poi in components.store.pois_in_bbox(box["south"], box["west"], box["north"], box["east"])
        if compute_distance_km_to_center(poi, center) * 1000.0 <= outcome.radius_used_m
    ]
    rows = poi_rows(in_area, center)
    summary: Dict[str, Any] = {
        "center": center.as_dict(),
        "tags": list(tags or []),
        "pois": len(outcome.pois),
        "raw_count": outcome.raw_count,
        "radius_used_m": outcome.radius_used_m,
        "capped": outcome.capped,
        "cache_hit": outcome.cache_hit,
        "new_count": outcome.new_count,
        "known_count": outcome.known_count,
        "subdivision": components.engine.stats(),
        "pois_in_area": len(rows),
        "requests": components.metrics.as_dict(),
    }
    if write_outputs:
        _write_outputs(output_dir, "search", rows, summary, render_search_summary(summary))
    return PipelineResult(pois=rows, summary=summary)


def run_cache_only(
    components: Components,
    center: Point,
    tags: Optional[Sequence[str]] = None,
    output_dir: str = config.OUTPUT_DIR,
    write_outputs: bool = True,
) -> PipelineResult:
    outcome = components.service.search_cache_only(center, tags)
    if outcome is None:
        logger.info("Nothing cached at %.5f,%.5f", center.lat, center.lon)
        rows: List[Dict[str, Any]] = []
        summary: Dict[str, Any] = {"center": center.as_dict(), "cached": False, "pois": 0}
    else:
        rows = poi_rows(outcome.pois, center)
        summary = {
            "center": center.as_dict(),
            "cached": True,
            "pois": len(outcome.pois),
            "raw_count": outcome.raw_count,
            "radius_used_m": outcome.radius_used_m,
            "capped": outcome.capped,
            "new_count": outcome.new_count,
        }
    if write_outputs:
        ensure_dir(output_dir)
        write_pois_csv(f"{output_dir}/cache_only_pois.csv", rows)
        write_json_object(f"{output_dir}/cache_only_summary.json", summary)
    return PipelineResult(pois=rows, summary=summary)


def run_bbox(
    components: Components,
    south: float,
    west: float,
    north: float,
    east: float,
    output_dir: str = config.OUTPUT_DIR,
    write_outputs: bool = True,
) -> PipelineResult:
    if south > north or west > east:
        raise ValueError("bbox must be south,west,north,east with south<=north and west<=east")
    pois = components.service.pois_in_bbox(south, west, north, east)
    center = Point((south + north) / 2.0, (west + east) / 2.0)
    rows = poi_rows(pois, center)
    summary = {
        "bbox": {"south": south, "west": west, "north": north, "east": east},
        "pois": len(rows),
    }
    if write_outputs:
        ensure_dir(output_dir)
        write_pois_csv(f"{output_dir}/bbox_pois.csv", rows)
        write_json_object(f"{output_dir}/bbox_summary.json", summary)
    return PipelineResult(pois=rows, summary=summary)


def run_scan(
    components: Components,
    center: Point,
    tags: Optional[Sequence[str]] = None,
    max_rings: Optional[int] = None,
    output_dir: str = config.OUTPUT_DIR,
    write_outputs: bool = True,
) -> PipelineResult:
    """Full coverage scan on the calling thread. CalibrationError propagates."""
    if write_outputs:
        ensure_dir(output_dir)
    progress = ProgressReporter(
        output_path=f"{output_dir}/progress.json" if write_outputs else None,
        log_every=config.PROGRESS_LOG_EVERY,
        write_interval_seconds=config.PROGRESS_WRITE_INTERVAL_SECONDS,
        logger=logger,
    )
    components.scanner.add_progress_listener(progress.on_snapshot)
    try:
        scan_summary = components.scanner.run(center, tags, max_rings)
    finally:
        components.scanner.remove_progress_listener(progress.on_snapshot)
        progress.flush()

    summary = scan_summary.as_dict()
    summary["requests"] = components.metrics.as_dict()
    rings = max_rings if max_rings is not None else components.config.max_rings
    step_m = 2 * components.config.grid_overlap_factor * scan_summary.grid_radius_m
    reach_m = rings * step_m + scan_summary.grid_radius_m
    box = circle_bbox(center, reach_m)
    pois = components.store.pois_in_bbox(box["south"], box["west"], box["north"], box["east"])
    rows = poi_rows(pois, center)
    summary["pois_in_area"] = len(rows)
    if write_outputs:
        _write_outputs(output_dir, "scan", rows, summary, render_scan_summary(summary))
    return PipelineResult(pois=rows, summary=summary)
